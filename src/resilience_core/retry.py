from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from resilience_core.errors import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    AttemptTimeoutError,
    RetryableStatusError,
    classify_error,
)
from resilience_core.logging import StructuredLogger, log_warning

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry attempt count, backoff and classification settings.

    Attributes:
        max_retries: Retries after the first attempt; ``0`` disables retrying.
        base_delay_ms: Delay before the second attempt. Attempt ``i`` waits
            ``base_delay_ms * 2**i`` after a transient failure.
        retryable_status_codes: HTTP statuses treated as transient.
        attempt_timeout_ms: Per-attempt deadline; ``None`` disables it.
        max_delay_ms: Upper bound for computed backoff; ``None`` is unbounded.
        respect_retry_after: Prefer a server ``Retry-After`` hint when present.
        max_retry_after_ms: Upper bound applied to ``Retry-After`` hints.
    """

    max_retries: int = 3
    base_delay_ms: float = 800
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES
    attempt_timeout_ms: float | None = None
    max_delay_ms: float | None = None
    respect_retry_after: bool = True
    max_retry_after_ms: float = 60_000

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "retryable_status_codes", frozenset(self.retryable_status_codes)
        )
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.attempt_timeout_ms is not None and self.attempt_timeout_ms <= 0:
            raise ValueError("attempt_timeout_ms must be > 0 when provided")
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0 when provided")
        if self.max_retry_after_ms < 0:
            raise ValueError("max_retry_after_ms must be >= 0")

    def delay_ms(self, attempt_index: int) -> float:
        """Return the backoff after failed attempt ``attempt_index`` (0-based)."""
        delay = self.base_delay_ms * (2**attempt_index)
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay


def parse_retry_after(
    value: str | None,
    *,
    now: datetime | None = None,
) -> float | None:
    """Parse a ``Retry-After`` header into milliseconds.

    Accepts delta-seconds or an HTTP-date. Returns ``None`` when the value is
    missing or unparseable.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        return max(float(raw), 0.0) * 1000.0
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    reference = datetime.now(UTC) if now is None else now
    return max((retry_at - reference).total_seconds() * 1000.0, 0.0)


def retry_after_from_headers(headers: object) -> float | None:
    """Extract a ``Retry-After`` hint from a header mapping, if present."""
    if not isinstance(headers, Mapping):
        return None
    value = headers.get("retry-after")
    if value is None:
        value = headers.get("Retry-After")
    return parse_retry_after(value if isinstance(value, str) else None)


class wait_policy_backoff(wait_base):
    """Tenacity wait strategy implementing ``RetryPolicy`` backoff."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        policy = self._policy
        delay_ms = policy.delay_ms(retry_state.attempt_number - 1)
        outcome = retry_state.outcome
        if policy.respect_retry_after and outcome is not None and outcome.failed:
            error = outcome.exception()
            if error is not None:
                hint = classify_error(error, policy.retryable_status_codes)
                if hint.retry_after_ms is not None:
                    delay_ms = min(hint.retry_after_ms, policy.max_retry_after_ms)
        return max(delay_ms, 0.0) / 1000.0


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_exponential_retrying(
    *,
    retry: retry_base,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with ``RetryPolicy`` exponential backoff."""
    options: dict[str, object] = {
        "retry": retry,
        "wait": wait_policy_backoff(policy),
        "stop": stop_after_attempt(policy.max_retries + 1),
        "reraise": reraise,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)  # type: ignore[arg-type]


class RetryExecutor:
    """Run one request thunk with classification-driven retries.

    Transient failures (network errors, timeouts, retryable HTTP statuses)
    are retried with exponential backoff. Fatal failures propagate on the first
    occurrence. After the last attempt the final error is re-raised unchanged.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        stop_event: asyncio.Event | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an executor.

        Args:
            policy: Retry configuration. Defaults to ``RetryPolicy()``.
            sleep: Awaitable sleep used between attempts (seconds).
            stop_event: When set, backoff sleeps end early and no further
                attempts are made.
            logger: Structured logger for retry events.
        """
        self.policy = RetryPolicy() if policy is None else policy
        if sleep is None and stop_event is not None:
            sleep = build_interruptible_sleep(stop_event)
        self._sleep = sleep
        self._stop_event = stop_event
        if logger is None:
            logger = structlog.stdlib.get_logger(__name__)
        self._logger = logger

    async def execute(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``request_fn`` until success, a fatal error, or exhaustion."""
        retrying = build_exponential_retrying(
            retry=retry_if_exception(self._should_retry),
            policy=self.policy,
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(request_fn)

        raise RuntimeError("Retry loop exited unexpectedly.")

    async def _attempt(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        timeout_ms = self.policy.attempt_timeout_ms
        deadline = asyncio.timeout(None if timeout_ms is None else timeout_ms / 1000.0)
        try:
            async with deadline:
                result = await request_fn()
        except TimeoutError as exc:
            if timeout_ms is not None and deadline.expired():
                raise AttemptTimeoutError(timeout_ms) from exc
            raise

        status_code = getattr(result, "status_code", None)
        if (
            isinstance(status_code, int)
            and status_code in self.policy.retryable_status_codes
        ):
            headers = getattr(result, "headers", None)
            raise RetryableStatusError(
                status_code,
                result,
                retry_after_ms=retry_after_from_headers(headers),
            )
        return result

    def _should_retry(self, error: BaseException) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            return False
        return classify_error(error, self.policy.retryable_status_codes).is_retryable

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if error is None:
            return
        classification = classify_error(error, self.policy.retryable_status_codes)
        next_action = retry_state.next_action
        delay_seconds = next_action.sleep if next_action is not None else 0.0
        log_warning(
            self._logger,
            "retry.scheduled",
            attempt=retry_state.attempt_number,
            delay_ms=delay_seconds * 1000.0,
            error_kind=str(classification.kind),
            error_type=error.__class__.__name__,
            status_code=classification.status_code,
        )
