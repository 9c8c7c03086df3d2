"""Circuit breaker state primitives."""

from dataclasses import dataclass
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Consecutive failures counted while ``CLOSED`` (kept as-is
            after opening for observability).
        success_count: Consecutive successful probes while ``HALF_OPEN``.
        opened_at: Monotonic milliseconds when the breaker entered ``OPEN``,
            if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    opened_at: float | None
