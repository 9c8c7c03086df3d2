from __future__ import annotations

import httpx
import pytest
from pytest_httpx import HTTPXMock

from resilience_core.circuit_breaker import (
    BreakerRegistry,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from resilience_core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    IntegrationHTTPError,
    NotFoundError,
    RateLimitError,
    RetryableStatusError,
    ServiceUnavailableError,
    ValidationError,
)
from resilience_core.http import (
    breaker_key_for_url,
    idempotent_request,
    raise_for_status,
    request_json,
    request_json_with_retry,
)
from resilience_core.idempotency import IdempotencyStore
from resilience_core.retry import RetryPolicy
from tests.resilience_core.support.fakes import FakeLogger

pytestmark = pytest.mark.asyncio

_URL = "https://api.example.com/v1/shipments"
_NO_WAIT = RetryPolicy(max_retries=2, base_delay_ms=0)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://api.dhl.com/v1/shipments", "http:api.dhl.com"),
        ("https://API.Skio.com:8443/x?y=1", "http:api.skio.com"),
        ("not a url", "http:unknown"),
    ],
)
async def test_breaker_key_for_url(url: str, expected: str) -> None:
    assert breaker_key_for_url(url) == expected


@pytest.mark.parametrize(
    ("status", "error_cls"),
    [
        (400, ValidationError),
        (401, AuthenticationError),
        (403, AuthorizationError),
        (404, NotFoundError),
        (409, ConflictError),
        (429, RateLimitError),
        (500, ServiceUnavailableError),
        (503, ServiceUnavailableError),
        (418, IntegrationHTTPError),
    ],
)
async def test_raise_for_status_maps_status_to_error_type(
    status: int,
    error_cls: type[IntegrationHTTPError],
) -> None:
    with pytest.raises(IntegrationHTTPError) as excinfo:
        raise_for_status(status, {"error": "nope"}, "DHL")

    assert type(excinfo.value) is error_cls
    assert excinfo.value.status_code == status
    assert excinfo.value.service == "DHL"
    assert str(excinfo.value) == f'DHL API error ({status}): {{"error": "nope"}}'


async def test_raise_for_status_keeps_text_body_and_retry_after() -> None:
    with pytest.raises(RateLimitError) as excinfo:
        raise_for_status(429, "slow down", "Skio", headers={"retry-after": "7"})

    assert str(excinfo.value) == "Skio API error (429): slow down"
    assert excinfo.value.retry_after_ms == 7_000.0


async def test_raise_for_status_is_noop_for_success() -> None:
    raise_for_status(200, {"ok": True}, "DHL")
    raise_for_status(302, "", "DHL")


async def test_request_json_decodes_json_and_falls_back_to_text(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(method="GET", url=_URL, json={"items": [1, 2]})
    httpx_mock.add_response(method="GET", url=_URL, text="plain body")

    async with httpx.AsyncClient() as client:
        decoded = await request_json(client, "GET", _URL)
        text = await request_json(client, "GET", _URL)

    assert decoded.status_code == 200
    assert decoded.data == {"items": [1, 2]}
    assert text.data == "plain body"


async def test_retryable_status_is_retried_through_breaker(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(method="GET", url=_URL, status_code=503)
    httpx_mock.add_response(method="GET", url=_URL, json={"ok": True})
    registry = BreakerRegistry()

    async with httpx.AsyncClient() as client:
        response = await request_json_with_retry(
            client,
            "GET",
            _URL,
            policy=_NO_WAIT,
            registry=registry,
            logger=FakeLogger(),
        )

    assert response.status_code == 200
    assert response.data == {"ok": True}
    assert registry.keys() == ("http:api.example.com",)
    assert registry.get("http:api.example.com").get_failure_count() == 0


async def test_fatal_status_raises_once_and_counts_one_breaker_failure(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(
        method="POST", url=_URL, status_code=400, json={"error": "weight"}
    )
    registry = BreakerRegistry()

    async with httpx.AsyncClient() as client:
        with pytest.raises(ValidationError) as excinfo:
            await request_json_with_retry(
                client,
                "POST",
                _URL,
                service="DHL",
                policy=_NO_WAIT,
                registry=registry,
                logger=FakeLogger(),
                json={"weight": -1},
            )

    assert str(excinfo.value) == 'DHL API error (400): {"error": "weight"}'
    assert len(httpx_mock.get_requests()) == 1
    assert registry.get("http:api.example.com").get_failure_count() == 1


async def test_fatal_status_defaults_service_to_host(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(method="GET", url=_URL, status_code=500, text="boom")

    async with httpx.AsyncClient() as client:
        with pytest.raises(ServiceUnavailableError) as excinfo:
            await request_json_with_retry(
                client,
                "GET",
                _URL,
                policy=_NO_WAIT,
                registry=BreakerRegistry(),
                logger=FakeLogger(),
            )

    assert str(excinfo.value) == "api.example.com API error (500): boom"
    assert len(httpx_mock.get_requests()) == 1


async def test_repeated_fatal_writes_open_the_breaker(httpx_mock: HTTPXMock) -> None:
    for _ in range(3):
        httpx_mock.add_response(method="POST", url=_URL, status_code=400, json={})
    store = IdempotencyStore(logger=FakeLogger())
    registry = BreakerRegistry(
        default_config=CircuitBreakerConfig(failure_threshold=3)
    )

    async with httpx.AsyncClient() as client:
        for index in range(3):
            with pytest.raises(ValidationError):
                await idempotent_request(
                    store,
                    "dhl_create_shipment",
                    f"order-{index}",
                    client,
                    "POST",
                    _URL,
                    service="DHL",
                    policy=RetryPolicy(max_retries=0),
                    registry=registry,
                    logger=FakeLogger(),
                )
        with pytest.raises(CircuitOpenError):
            await idempotent_request(
                store,
                "dhl_create_shipment",
                "order-3",
                client,
                "POST",
                _URL,
                service="DHL",
                registry=registry,
                logger=FakeLogger(),
            )

    breaker = registry.get("http:api.example.com")
    assert breaker.get_state() == CircuitState.OPEN
    assert breaker.get_failure_count() == 3
    assert len(httpx_mock.get_requests()) == 3
    assert len(store) == 0


async def test_breaker_counts_one_failure_per_exhausted_retry_sequence(
    httpx_mock: HTTPXMock,
) -> None:
    for _ in range(3):
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=_URL)
    registry = BreakerRegistry(
        default_config=CircuitBreakerConfig(failure_threshold=2)
    )

    async with httpx.AsyncClient() as client:
        with pytest.raises(httpx.ConnectError):
            await request_json_with_retry(
                client,
                "GET",
                _URL,
                policy=_NO_WAIT,
                registry=registry,
                logger=FakeLogger(),
            )

    breaker = registry.get("http:api.example.com")
    assert len(httpx_mock.get_requests()) == 3
    assert breaker.get_failure_count() == 1
    assert breaker.get_state() == CircuitState.CLOSED


async def test_open_breaker_short_circuits_without_network(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(method="GET", url=_URL, status_code=503)
    registry = BreakerRegistry(
        default_config=CircuitBreakerConfig(failure_threshold=1)
    )
    policy = RetryPolicy(max_retries=0)

    async with httpx.AsyncClient() as client:
        with pytest.raises(RetryableStatusError):
            await request_json_with_retry(
                client,
                "GET",
                _URL,
                policy=policy,
                registry=registry,
                logger=FakeLogger(),
            )
        with pytest.raises(CircuitOpenError) as excinfo:
            await request_json_with_retry(
                client,
                "GET",
                _URL,
                policy=policy,
                registry=registry,
                logger=FakeLogger(),
            )

    assert excinfo.value.breaker_name == "http:api.example.com"
    assert len(httpx_mock.get_requests()) == 1


async def test_idempotent_request_sends_write_once(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(
        method="POST",
        url=_URL,
        status_code=201,
        json={"shipment": "JD0001"},
    )
    store = IdempotencyStore(logger=FakeLogger())

    async with httpx.AsyncClient() as client:
        results = [
            await idempotent_request(
                store,
                "dhl_create_shipment",
                "order-1001",
                client,
                "POST",
                _URL,
                service="DHL",
                policy=_NO_WAIT,
                registry=BreakerRegistry(),
                logger=FakeLogger(),
                json={"order": 1001},
            )
            for _ in range(2)
        ]

    assert [result.deduplicated for result in results] == [False, True]
    assert all(result.status == 201 for result in results)
    assert all(result.data == {"shipment": "JD0001"} for result in results)
    assert len(httpx_mock.get_requests()) == 1


async def test_idempotent_request_failure_is_not_stored(
    httpx_mock: HTTPXMock,
) -> None:
    httpx_mock.add_response(
        method="POST", url=_URL, status_code=409, json={"error": "duplicate"}
    )
    httpx_mock.add_response(method="POST", url=_URL, status_code=201, json={})
    store = IdempotencyStore(logger=FakeLogger())
    registry = BreakerRegistry()

    async with httpx.AsyncClient() as client:
        with pytest.raises(ConflictError):
            await idempotent_request(
                store,
                "skio_pause",
                "sub-7",
                client,
                "POST",
                _URL,
                service="Skio",
                registry=registry,
                logger=FakeLogger(),
            )
        retried = await idempotent_request(
            store,
            "skio_pause",
            "sub-7",
            client,
            "POST",
            _URL,
            service="Skio",
            registry=registry,
            logger=FakeLogger(),
        )

    assert not retried.deduplicated
    assert retried.status == 201
    assert len(httpx_mock.get_requests()) == 2
