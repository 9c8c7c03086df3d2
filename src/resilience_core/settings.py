from __future__ import annotations

from typing import Annotated

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from resilience_core.circuit_breaker import CircuitBreakerConfig
from resilience_core.errors import DEFAULT_RETRYABLE_STATUS_CODES
from resilience_core.limiter import LimiterConfig
from resilience_core.logging import get_log_level_value
from resilience_core.retry import RetryPolicy

DEFAULT_ENV_PREFIX = "RESILIENCE_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Environment-driven defaults for one integration's resilience stack."""

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    log_level: str = "INFO"
    limiter_concurrency: int = 2
    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 2
    breaker_reset_timeout_ms: int = 30_000
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 800
    retry_max_delay_ms: int | None = 30_000
    retry_attempt_timeout_ms: int | None = 30_000
    retry_status_codes: Annotated[frozenset[int], NoDecode] = (
        DEFAULT_RETRYABLE_STATUS_CODES
    )

    @classmethod
    def for_integration(cls, name: str) -> ResilienceSettings:
        """Load settings from ``RESILIENCE_<NAME>_*`` variables."""
        normalized = name.strip().upper().replace("-", "_")
        if not normalized:
            raise ValueError("integration name must be non-empty")
        prefix = f"{DEFAULT_ENV_PREFIX}{normalized}_"
        return cls(_env_prefix=prefix)  # type: ignore[call-arg]

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @field_validator("limiter_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(1, value)

    @field_validator("retry_status_codes", mode="before")
    @classmethod
    def _parse_status_codes(cls, value: object) -> object:
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",")]
            return frozenset(int(part) for part in parts if part)
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> ResilienceSettings:
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_success_threshold < 1:
            raise ValueError("breaker_success_threshold must be >= 1")
        if self.breaker_reset_timeout_ms < 0:
            raise ValueError("breaker_reset_timeout_ms must be >= 0")
        if self.retry_max_retries < 0:
            raise ValueError("retry_max_retries must be >= 0")
        if self.retry_base_delay_ms < 0:
            raise ValueError("retry_base_delay_ms must be >= 0")
        if (
            self.retry_max_delay_ms is not None
            and self.retry_max_delay_ms < self.retry_base_delay_ms
        ):
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        timeout_ms = self.retry_attempt_timeout_ms
        if timeout_ms is not None and timeout_ms <= 0:
            raise ValueError("retry_attempt_timeout_ms must be > 0")
        if any(code < 100 or code > 599 for code in self.retry_status_codes):
            raise ValueError("retry_status_codes must be valid HTTP status codes")
        return self

    def limiter_config(self) -> LimiterConfig:
        return LimiterConfig(concurrency=self.limiter_concurrency)

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            success_threshold=self.breaker_success_threshold,
            reset_timeout_ms=self.breaker_reset_timeout_ms,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            retryable_status_codes=self.retry_status_codes,
            attempt_timeout_ms=self.retry_attempt_timeout_ms,
            max_delay_ms=self.retry_max_delay_ms,
        )
