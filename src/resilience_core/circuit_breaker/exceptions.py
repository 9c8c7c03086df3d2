"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - The original error raised by the protected call, which is always re-raised
    unchanged.
"""

import math


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected because the circuit is open.

    Attributes:
        remaining_ms: Milliseconds until a half-open probe may be attempted.
        breaker_name: Name of the breaker rejecting the call, if known.
    """

    def __init__(self, remaining_ms: float, breaker_name: str | None = None) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            remaining_ms: Milliseconds until the next probe window opens.
            breaker_name: Breaker rejecting the call.
        """
        self.remaining_ms = remaining_ms
        self.breaker_name = breaker_name
        seconds = math.ceil(remaining_ms / 1000)
        target = f" for {breaker_name}" if breaker_name else ""
        super().__init__(f"Circuit breaker open{target} ({seconds}s until retry)")
