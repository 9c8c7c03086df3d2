"""Shared error types and the transient/fatal classifier for resilience_core."""

from __future__ import annotations

import errno
from collections.abc import Collection
from dataclasses import dataclass
from enum import StrEnum

import httpx

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

_TRANSIENT_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class FatalError(RuntimeError):
    """Failure that must never be retried (validation, auth, bad request)."""


class AttemptTimeoutError(TransientError, TimeoutError):
    """Raised when a single attempt exceeds its deadline."""

    def __init__(self, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Request timed out after {timeout_ms:g}ms")


class RetryableStatusError(TransientError):
    """A response whose HTTP status is in the retryable set.

    Attributes:
        status_code: HTTP status of the response.
        response: The response object returned by the request thunk.
        retry_after_ms: Server-provided retry hint in milliseconds, if any.
    """

    def __init__(
        self,
        status_code: int,
        response: object,
        retry_after_ms: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.response = response
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Retryable HTTP status {status_code}")


class IntegrationHTTPError(Exception):
    """Base class for typed HTTP failures returned by an integration.

    Attributes:
        status_code: HTTP status returned by the remote service.
        service: Human-readable name of the remote service.
        retry_after_ms: Server-provided retry hint in milliseconds, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        service: str | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.service = service
        self.retry_after_ms = retry_after_ms


class ValidationError(IntegrationHTTPError):
    """HTTP 400: the request payload was rejected."""


class AuthenticationError(IntegrationHTTPError):
    """HTTP 401: credentials were missing or invalid."""


class AuthorizationError(IntegrationHTTPError):
    """HTTP 403: credentials lack permission."""


class NotFoundError(IntegrationHTTPError):
    """HTTP 404."""


class ConflictError(IntegrationHTTPError):
    """HTTP 409."""


class RateLimitError(IntegrationHTTPError):
    """HTTP 429."""


class ServiceUnavailableError(IntegrationHTTPError):
    """HTTP 5xx."""


class ErrorKind(StrEnum):
    """Classification tags consumed by the retry executor."""

    TRANSIENT = "transient"
    FATAL = "fatal"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ErrorClassification:
    """Tagged result of :func:`classify_error`.

    Attributes:
        kind: Transient, fatal or timeout.
        error: The classified exception, unchanged.
        status_code: HTTP status associated with the error, when known.
        retry_after_ms: Retry hint carried by the error, when known.
    """

    kind: ErrorKind
    error: BaseException
    status_code: int | None = None
    retry_after_ms: float | None = None

    @property
    def is_retryable(self) -> bool:
        """Return whether the retry executor may attempt the call again."""
        return self.kind is not ErrorKind.FATAL


def status_code_of(error: BaseException) -> int | None:
    """Return the HTTP status carried by ``error``, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def _retry_after_of(error: BaseException) -> float | None:
    value = getattr(error, "retry_after_ms", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _is_network_failure(error: BaseException) -> bool:
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return True
    return isinstance(error, OSError) and error.errno in _TRANSIENT_ERRNOS


def classify_error(
    error: BaseException,
    retryable_status_codes: Collection[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> ErrorClassification:
    """Classify ``error`` as transient, fatal or timeout.

    This is the only place that inspects error shape. Explicit
    ``FatalError``/``TransientError`` markers win over status codes; a status
    code outside ``retryable_status_codes`` is fatal.
    """
    status_code = status_code_of(error)
    retry_after_ms = _retry_after_of(error)

    def _tag(kind: ErrorKind) -> ErrorClassification:
        return ErrorClassification(
            kind=kind,
            error=error,
            status_code=status_code,
            retry_after_ms=retry_after_ms,
        )

    if isinstance(error, FatalError):
        return _tag(ErrorKind.FATAL)
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return _tag(ErrorKind.TIMEOUT)
    if isinstance(error, RetryableStatusError):
        return _tag(ErrorKind.TRANSIENT)
    if status_code is not None:
        if status_code in retryable_status_codes:
            return _tag(ErrorKind.TRANSIENT)
        return _tag(ErrorKind.FATAL)
    if isinstance(error, TransientError) or _is_network_failure(error):
        return _tag(ErrorKind.TRANSIENT)
    return _tag(ErrorKind.FATAL)


def is_retryable(
    error: BaseException,
    retryable_status_codes: Collection[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> bool:
    """Return whether ``error`` is worth another attempt."""
    return classify_error(error, retryable_status_codes).is_retryable
