"""At-most-once results for write operations.

Write tools accept a caller-supplied idempotency key. The first successful
call stores its ``(status, data)`` outcome; a repeat with the same key returns
the stored outcome flagged ``deduplicated`` instead of repeating the side
effect. Keys are scoped per operation, so the same raw token used for
``dhl_create_shipment`` and ``dhl_cancel_shipment`` never collides.

Entries never expire within a process; ``clear()`` is the only way to drop
them.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from resilience_core.logging import StructuredLogger, log_info

_EntryKey = tuple[str, str]


@dataclass(frozen=True)
class OperationOutcome:
    """Result of one write operation as stored for dedup."""

    status: int
    data: object


@dataclass(slots=True)
class _KeyLock:
    """Serializes callers sharing one key; dropped when the last one leaves."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass(frozen=True)
class IdempotencyResult:
    """Outcome returned to the caller of ``with_idempotency``."""

    deduplicated: bool
    status: int
    data: object


class IdempotencyStore:
    """Per-operation map from idempotency key to a completed outcome."""

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self._entries: dict[_EntryKey, OperationOutcome] = {}
        self._locks: dict[_EntryKey, _KeyLock] = {}
        self._guard = threading.Lock()
        if logger is None:
            logger = structlog.stdlib.get_logger(__name__)
        self._logger = logger

    def get(self, operation_id: str, caller_key: str) -> OperationOutcome | None:
        """Return the stored outcome for the pair, if any."""
        with self._guard:
            return self._entries.get((operation_id, caller_key))

    def clear(self) -> None:
        """Drop every stored outcome."""
        with self._guard:
            self._entries.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @property
    def in_flight_count(self) -> int:
        """Number of keys with at least one caller running or waiting."""
        with self._guard:
            return len(self._locks)

    async def with_idempotency(
        self,
        operation_id: str,
        caller_key: str | None,
        compute_fn: Callable[[], Awaitable[OperationOutcome]],
    ) -> IdempotencyResult:
        """Run ``compute_fn`` at most once per ``(operation_id, caller_key)``.

        Args:
            operation_id: Logical operation name scoping the key space.
            caller_key: Caller-supplied idempotency token. When empty or
                ``None`` dedup is disabled and ``compute_fn`` always runs.
            compute_fn: Thunk performing the write and returning its outcome.

        Returns:
            The stored outcome with ``deduplicated=True`` on a repeat, or the
            fresh outcome with ``deduplicated=False``.

        Raises:
            Exception: Whatever ``compute_fn`` raises. Nothing is stored.
        """
        if not caller_key:
            outcome = await compute_fn()
            return IdempotencyResult(
                deduplicated=False, status=outcome.status, data=outcome.data
            )

        key = (operation_id, caller_key)
        key_lock = self._checkout_lock(key)
        try:
            async with key_lock.lock:
                return await self._run_once(key, compute_fn)
        finally:
            self._return_lock(key, key_lock)

    def _checkout_lock(self, key: _EntryKey) -> _KeyLock:
        with self._guard:
            key_lock = self._locks.get(key)
            if key_lock is None:
                key_lock = self._locks[key] = _KeyLock()
            key_lock.users += 1
            return key_lock

    def _return_lock(self, key: _EntryKey, key_lock: _KeyLock) -> None:
        with self._guard:
            key_lock.users -= 1
            if key_lock.users == 0 and self._locks.get(key) is key_lock:
                del self._locks[key]

    async def _run_once(
        self,
        key: _EntryKey,
        compute_fn: Callable[[], Awaitable[OperationOutcome]],
    ) -> IdempotencyResult:
        operation_id, caller_key = key
        existing = self.get(operation_id, caller_key)
        if existing is not None:
            log_info(
                self._logger,
                "idempotency.deduplicated",
                operation_id=operation_id,
                status=existing.status,
            )
            return IdempotencyResult(
                deduplicated=True, status=existing.status, data=existing.data
            )

        outcome = await compute_fn()
        with self._guard:
            self._entries.setdefault(key, outcome)
        return IdempotencyResult(
            deduplicated=False, status=outcome.status, data=outcome.data
        )


_DEFAULT_STORE = IdempotencyStore()


def get_default_store() -> IdempotencyStore:
    """Return the process-wide idempotency store."""
    return _DEFAULT_STORE


async def with_idempotency(
    operation_id: str,
    caller_key: str | None,
    compute_fn: Callable[[], Awaitable[OperationOutcome]],
) -> IdempotencyResult:
    """Run ``compute_fn`` through the process-wide store."""
    return await _DEFAULT_STORE.with_idempotency(operation_id, caller_key, compute_fn)


def clear_idempotency_store() -> None:
    """Clear the process-wide store. Intended for deterministic tests."""
    _DEFAULT_STORE.clear()
