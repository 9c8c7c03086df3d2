"""Resilient JSON-over-HTTP calls for integrations.

The full pipeline for one outbound call is::

    idempotency store (writes only)
      -> circuit breaker keyed by host
        -> retry executor
          -> one HTTP request

The breaker sees one outcome per fully retried call, not one per attempt.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from resilience_core.circuit_breaker import (
    BreakerRegistry,
    CircuitBreakerConfig,
    get_default_registry,
)
from resilience_core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    IntegrationHTTPError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)
from resilience_core.idempotency import (
    IdempotencyResult,
    IdempotencyStore,
    OperationOutcome,
)
from resilience_core.logging import StructuredLogger
from resilience_core.retry import RetryExecutor, RetryPolicy, retry_after_from_headers

_STATUS_ERRORS: dict[int, type[IntegrationHTTPError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    429: RateLimitError,
}


@dataclass(frozen=True)
class JsonResponse:
    """Decoded HTTP response; ``data`` is text when the body is not JSON."""

    status_code: int
    headers: Mapping[str, str]
    data: Any


def breaker_key_for_url(url: str) -> str:
    """Return the per-host breaker key for ``url``."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        hostname = None
    return f"http:{hostname or 'unknown'}"


def raise_for_status(
    status_code: int,
    data: object,
    service: str,
    *,
    headers: Mapping[str, str] | None = None,
) -> None:
    """Raise the typed error for a failing HTTP status; no-op below 400."""
    if status_code < 400:
        return
    body = data if isinstance(data, str) else json.dumps(data, default=str)
    message = f"{service} API error ({status_code}): {body}"
    retry_after_ms = retry_after_from_headers(headers)
    error_cls = _STATUS_ERRORS.get(status_code)
    if error_cls is None:
        error_cls = (
            ServiceUnavailableError if status_code >= 500 else IntegrationHTTPError
        )
    raise error_cls(
        message,
        status_code=status_code,
        service=service,
        retry_after_ms=retry_after_ms,
    )


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> JsonResponse:
    """Send one request and decode the body as JSON when possible."""
    response = await client.request(method, url, **kwargs)
    try:
        data: Any = response.json()
    except ValueError:
        data = response.text
    return JsonResponse(
        status_code=response.status_code,
        headers=response.headers,
        data=data,
    )


async def request_json_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str | None = None,
    policy: RetryPolicy | None = None,
    registry: BreakerRegistry | None = None,
    breaker_config: CircuitBreakerConfig | None = None,
    logger: StructuredLogger | None = None,
    **kwargs: Any,
) -> JsonResponse:
    """Send a request through the per-host breaker and the retry executor.

    A failing status outside the policy's retryable set is raised as its
    typed error inside the breaker, so it is never retried and counts as one
    breaker failure.

    Args:
        client: Shared async HTTP client.
        method: HTTP method.
        url: Absolute request URL; its host selects the breaker.
        service: Name used in error messages; defaults to the URL host.
        policy: Retry configuration for this call site.
        registry: Breaker registry; defaults to the process-wide one.
        breaker_config: Config used if this host's breaker does not exist yet.
        logger: Structured logger for retry events.
        **kwargs: Forwarded to ``httpx.AsyncClient.request``.

    Raises:
        CircuitOpenError: When the host's breaker is open.
        IntegrationHTTPError: On the first non-retryable failing status.
        RetryableStatusError: When every attempt returned a retryable status.
        httpx.TransportError: When every attempt failed at the network level.
    """
    breaker_key = breaker_key_for_url(url)
    breaker_registry = get_default_registry() if registry is None else registry
    breaker = breaker_registry.get(breaker_key, breaker_config)
    executor = RetryExecutor(policy, logger=logger)
    service_name = service or breaker_key.removeprefix("http:")

    async def _send() -> JsonResponse:
        response = await request_json(client, method, url, **kwargs)
        if response.status_code not in executor.policy.retryable_status_codes:
            raise_for_status(
                response.status_code,
                response.data,
                service_name,
                headers=response.headers,
            )
        return response

    async def _send_with_retry() -> JsonResponse:
        return await executor.execute(_send)

    return await breaker.execute(_send_with_retry)


async def idempotent_request(
    store: IdempotencyStore,
    operation_id: str,
    idempotency_key: str | None,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    policy: RetryPolicy | None = None,
    registry: BreakerRegistry | None = None,
    breaker_config: CircuitBreakerConfig | None = None,
    logger: StructuredLogger | None = None,
    **kwargs: Any,
) -> IdempotencyResult:
    """Perform a write at most once per ``(operation_id, idempotency_key)``.

    The store is consulted before the breaker or the network are touched.
    Only successful responses are stored; a failing status raises and leaves
    the key unused.
    """

    async def _compute() -> OperationOutcome:
        response = await request_json_with_retry(
            client,
            method,
            url,
            service=service,
            policy=policy,
            registry=registry,
            breaker_config=breaker_config,
            logger=logger,
            **kwargs,
        )
        return OperationOutcome(status=response.status_code, data=response.data)

    return await store.with_idempotency(operation_id, idempotency_key, _compute)
