"""Keyed pool of circuit breakers.

Unrelated integrations must fail independently, so every remote target gets
its own breaker, looked up by a string key such as ``"http:api.dhl.com"``.
"""

import threading
from collections.abc import Sequence

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.metrics import BreakerListener


class BreakerRegistry:
    """Lazily-populated mapping from breaker key to ``CircuitBreaker``."""

    def __init__(
        self,
        *,
        default_config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Create an empty registry.

        Args:
            default_config: Config used when ``get`` is called without one.
            listeners: Listener hooks attached to every breaker created here.
        """
        self._default_config = default_config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(
        self,
        key: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Return the breaker for ``key``, creating it on first lookup.

        ``config`` only applies when the breaker is created; later lookups
        return the existing instance unchanged.
        """
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    config=config if config is not None else self._default_config,
                    listeners=self._listeners,
                )
                self._breakers[key] = breaker
            return breaker

    def reset_all(self) -> None:
        """Forget every breaker.

        References obtained before the call keep their state and keep working
        on their own; subsequent lookups construct fresh instances.
        """
        with self._lock:
            self._breakers.clear()

    def keys(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._breakers)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)


_DEFAULT_REGISTRY = BreakerRegistry()


def get_default_registry() -> BreakerRegistry:
    """Return the process-wide registry."""
    return _DEFAULT_REGISTRY


def get_circuit_breaker(
    key: str,
    config: CircuitBreakerConfig | None = None,
) -> CircuitBreaker:
    """Return the process-wide breaker for ``key``."""
    return _DEFAULT_REGISTRY.get(key, config)


def reset_all_circuit_breakers() -> None:
    """Clear the process-wide registry. Intended for tests and admin tooling."""
    _DEFAULT_REGISTRY.reset_all()
