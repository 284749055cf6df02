from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio

from services.routing import (
    OrsRoutingProvider,
    RoutingError,
    RoutingMalformedResponse,
    RoutingRateLimited,
    RoutingTransportError,
    RoutingUnauthorized,
)

pytestmark = pytest.mark.asyncio

BASE = "https://ors.test"
MATRIX_URL = f"{BASE}/v2/matrix/foot-walking"
ISO_URL = f"{BASE}/v2/isochrones/foot-walking"

ORIGIN = (50.0755, 14.4378)
DESTS = [(50.08, 14.44), (50.09, 14.45)]


@pytest_asyncio.fixture
async def provider():
    client = httpx.AsyncClient()
    prov = OrsRoutingProvider("ors-key", base_url=BASE + "/", client=client)
    yield prov
    await client.aclose()


async def test_matrix_request_shape_and_result(provider, httpx_mock):
    httpx_mock.add_response(
        method="POST",
        url=MATRIX_URL,
        json={"durations": [[120.0, None]], "distances": [[150.0, None]]},
        headers={"x-ratelimit-remaining": "499"},
    )

    result = await provider.matrix(ORIGIN, DESTS)

    assert result.durations == [120.0, None]
    assert result.distances == [150.0, None]
    assert result.headers["x-ratelimit-remaining"] == "499"

    request = httpx_mock.get_request()
    assert request.headers["Authorization"] == "ors-key"
    body = json.loads(request.content)
    # ORS wants [lng, lat]
    assert body["locations"] == [[14.4378, 50.0755], [14.44, 50.08], [14.45, 50.09]]
    assert body["sources"] == [0]
    assert body["destinations"] == [1, 2]
    assert body["metrics"] == ["distance", "duration"]


async def test_empty_destinations_make_no_call(provider, httpx_mock):
    result = await provider.matrix(ORIGIN, [])
    assert result.durations == []
    assert httpx_mock.get_requests() == []


async def test_429_is_rate_limited_with_retry_after(provider, httpx_mock):
    httpx_mock.add_response(method="POST", url=MATRIX_URL, status_code=429, headers={"Retry-After": "42"})

    with pytest.raises(RoutingRateLimited) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.retry_after_s == 42
    assert exc.value.tag == "rate_limited"


@pytest.mark.parametrize("code", [401, 403])
async def test_auth_failures_are_unauthorized(provider, httpx_mock, code):
    httpx_mock.add_response(method="POST", url=MATRIX_URL, status_code=code)

    with pytest.raises(RoutingUnauthorized) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.status_code == code


async def test_other_http_errors_carry_a_status_tag(provider, httpx_mock):
    httpx_mock.add_response(method="POST", url=MATRIX_URL, status_code=502, text="bad gateway")

    with pytest.raises(RoutingError) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.tag == "http_502"


async def test_size_mismatch_is_malformed(provider, httpx_mock):
    httpx_mock.add_response(method="POST", url=MATRIX_URL, json={"durations": [[1.0]], "distances": [[1.0]]})

    with pytest.raises(RoutingMalformedResponse):
        await provider.matrix(ORIGIN, DESTS)


async def test_non_json_matrix_is_malformed(provider, httpx_mock):
    httpx_mock.add_response(method="POST", url=MATRIX_URL, text="<html>oops</html>")

    with pytest.raises(RoutingMalformedResponse):
        await provider.matrix(ORIGIN, DESTS)


async def test_network_error_is_transport_error(provider, httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("refused"), url=MATRIX_URL)

    with pytest.raises(RoutingTransportError) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.tag == "network_error"


async def test_isochrones_request_and_features(provider, httpx_mock):
    geojson = {"type": "FeatureCollection", "features": [{"type": "Feature", "properties": {"value": 600}}]}
    httpx_mock.add_response(method="POST", url=ISO_URL, json=geojson)

    result = await provider.isochrones(ORIGIN, [600, 1200])

    assert result.geojson == geojson
    body = json.loads(httpx_mock.get_request().content)
    assert body == {"locations": [[14.4378, 50.0755]], "range": [600, 1200], "range_type": "time"}


async def test_isochrones_without_features_are_malformed(provider, httpx_mock):
    httpx_mock.add_response(method="POST", url=ISO_URL, json={"error": "nope"})

    with pytest.raises(RoutingMalformedResponse):
        await provider.isochrones(ORIGIN, [600])
