from __future__ import annotations

from collections.abc import Iterator

import pytest

import resilience_core.circuit_breaker.breaker as breaker_mod
from resilience_core.circuit_breaker import reset_all_circuit_breakers
from resilience_core.idempotency import clear_idempotency_store
from tests.resilience_core.support.fakes import (
    FakeClock,
    FakeLogger,
    RecordingSleep,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive circuit breaker time manually."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_now_ms", clock.now_ms)
    return clock


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a retry sleep that records delays instead of waiting."""
    return RecordingSleep()


@pytest.fixture(autouse=True)
def _reset_process_wide_state() -> Iterator[None]:
    reset_all_circuit_breakers()
    clear_idempotency_store()
    yield
    reset_all_circuit_breakers()
    clear_idempotency_store()
