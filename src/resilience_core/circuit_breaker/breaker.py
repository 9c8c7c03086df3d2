"""Core circuit breaker implementation."""

import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from resilience_core.circuit_breaker.exceptions import CircuitOpenError
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerSnapshot, CircuitState

T = TypeVar("T")

_Transition = tuple[CircuitState, CircuitState]


def _now_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures required while ``CLOSED``
            before opening.
        success_threshold: Consecutive successful probes required while
            ``HALF_OPEN`` before closing.
        reset_timeout_ms: Milliseconds to wait while ``OPEN`` before allowing
            a probe.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_ms: float = 30_000
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be >= 0")


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation.

    The open -> half-open transition is evaluated lazily on the next
    ``execute`` call; no timer is ever scheduled. All bookkeeping happens in
    short synchronous sections, so the state is never observed mid-update.
    """

    def __init__(
        self,
        name: str = "default",
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Breaker name used in errors and listener events.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None

    def get_state(self) -> CircuitState:
        return self._state

    def get_failure_count(self) -> int:
        return self._failure_count

    def get_success_count(self) -> int:
        return self._success_count

    def snapshot(self) -> BreakerSnapshot:
        """Return a consistent point-in-time copy of the breaker internals."""
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                opened_at=self._opened_at,
            )

    def reset(self) -> None:
        """Force the breaker back to a healthy ``CLOSED`` state."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke an async thunk under circuit breaker protection.

        Args:
            fn: Zero-argument async callable to execute.

        Returns:
            The result of ``fn`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
                ``fn`` is not invoked and nothing is counted.
            Exception: The original exception from ``fn``, unchanged.
        """
        remaining_ms, transition = self._before_call()
        if remaining_ms is not None:
            await self._emit_call_rejected(remaining_ms)
            raise CircuitOpenError(remaining_ms, breaker_name=self.name)
        if transition is not None:
            await self._emit_state_change(*transition)

        start = time.monotonic()
        try:
            result = await fn()
        except self.config.excluded_exceptions:
            raise
        except Exception as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            transition = self._on_failure()
            await self._emit_call_failed(exc, elapsed)
            if transition is not None:
                await self._emit_state_change(*transition)
            raise

        elapsed = max(time.monotonic() - start, 0.0)
        transition = self._on_success()
        if transition is not None:
            await self._emit_state_change(*transition)
        await self._emit_call_succeeded(elapsed)
        return result

    def _before_call(self) -> tuple[float | None, _Transition | None]:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return None, None

            opened_at = self._opened_at if self._opened_at is not None else _now_ms()
            elapsed = _now_ms() - opened_at
            if elapsed < self.config.reset_timeout_ms:
                return self.config.reset_timeout_ms - elapsed, None

            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            self._opened_at = None
            return None, (CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _on_success(self) -> _Transition | None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._failure_count = 0
                self._success_count += 1
                if self._success_count < self.config.success_threshold:
                    return None
                self._state = CircuitState.CLOSED
                self._success_count = 0
                return CircuitState.HALF_OPEN, CircuitState.CLOSED

            if self._state is CircuitState.CLOSED:
                self._failure_count = 0
            # A straggler finishing while OPEN does not close the circuit.
            return None

    def _on_failure(self) -> _Transition | None:
        with self._lock:
            self._failure_count += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                return CircuitState.HALF_OPEN, CircuitState.OPEN

            if (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._open()
                return CircuitState.CLOSED, CircuitState.OPEN
            return None

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._opened_at = _now_ms()

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self, remaining_ms: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name, remaining_ms)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue
