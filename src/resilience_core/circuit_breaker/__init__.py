"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - State lives in the breaker instance only; nothing is persisted.
  - ``OPEN`` becomes ``HALF_OPEN`` lazily, on the first ``execute`` call after
    the reset timeout has elapsed. That call is the probe.
  - ``success_threshold`` consecutive probe successes close the circuit; any
    probe failure re-opens it and restarts the cool-down.
  - A rejected call raises ``CircuitOpenError`` without invoking the wrapped
    callable and is not counted as a failure.
  - ``BreakerRegistry`` hands out one breaker per key so unrelated targets fail
    independently.
"""

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from resilience_core.circuit_breaker.registry import (
    BreakerRegistry,
    get_circuit_breaker,
    get_default_registry,
    reset_all_circuit_breakers,
)
from resilience_core.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerRegistry",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "LoggingBreakerListener",
    "get_circuit_breaker",
    "get_default_registry",
    "reset_all_circuit_breakers",
]
