"""Observability hooks for circuit breakers."""

from typing import Protocol

import structlog

from resilience_core.circuit_breaker.state import CircuitState
from resilience_core.logging import (
    StructuredLogger,
    log_info,
    log_warning,
)


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Hooks run after the breaker has finished updating its state, so a
        listener always observes a consistent breaker.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str, remaining_ms: float) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener(BreakerListener):
    """Emit structured log events for breaker activity."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        if logger is None:
            logger = structlog.stdlib.get_logger(__name__)
        self._logger = logger

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Log every state transition."""
        log_warning(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=name,
            old_state=str(old),
            new_state=str(new),
        )

    async def on_call_rejected(self, name: str, remaining_ms: float) -> None:
        """Log short-circuited calls with the remaining cool-down."""
        log_info(
            self._logger,
            "circuit_breaker.call_rejected",
            breaker=name,
            remaining_ms=remaining_ms,
        )

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """No-op for this listener."""
        _ = (name, elapsed)

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Log counted failures."""
        log_info(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            error_type=exc.__class__.__name__,
            elapsed=elapsed,
        )
