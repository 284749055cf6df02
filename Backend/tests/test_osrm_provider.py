from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from services.routing import (
    OsrmRoutingProvider,
    RoutingError,
    RoutingMalformedResponse,
    RoutingRateLimited,
    RoutingTransportError,
    RoutingUnauthorized,
)

pytestmark = pytest.mark.asyncio

BASE = "https://osrm.test"

ORIGIN = (50.0755, 14.4378)
DESTS = [(50.08, 14.44), (50.09, 14.45)]


@pytest_asyncio.fixture
async def provider():
    client = httpx.AsyncClient()
    prov = OsrmRoutingProvider(base_url=BASE + "/", client=client)
    yield prov
    await client.aclose()


async def test_table_request_shape_and_result(provider, httpx_mock):
    httpx_mock.add_response(
        method="GET",
        json={"code": "Ok", "durations": [[95.4, None]], "distances": [[120.2, None]]},
    )

    result = await provider.matrix(ORIGIN, DESTS)

    assert result.durations == [95.4, None]
    assert result.distances == [120.2, None]

    request = httpx_mock.get_request()
    assert request.url.host == "osrm.test"
    # OSRM wants lng,lat joined by ';' in the path
    assert request.url.path == (
        "/table/v1/foot/14.437800,50.075500;14.440000,50.080000;14.450000,50.090000"
    )
    assert request.url.params["sources"] == "0"
    assert request.url.params["destinations"] == "1;2"
    assert request.url.params["annotations"] == "duration,distance"


async def test_profile_is_mapped_to_osrm_names():
    async with httpx.AsyncClient() as client:
        assert OsrmRoutingProvider(profile="cycling-regular", client=client).osrm_profile == "bike"
        assert OsrmRoutingProvider(profile="unknown", client=client).osrm_profile == "foot"


async def test_empty_destinations_make_no_call(provider, httpx_mock):
    result = await provider.matrix(ORIGIN, [])
    assert result.durations == []
    assert httpx_mock.get_requests() == []


async def test_missing_distances_are_none(provider, httpx_mock):
    httpx_mock.add_response(method="GET", json={"code": "Ok", "durations": [[10.0, 20.0]]})

    result = await provider.matrix(ORIGIN, DESTS)

    assert result.distances == [None, None]


async def test_not_ok_code_is_malformed(provider, httpx_mock):
    httpx_mock.add_response(method="GET", json={"code": "NoTable", "message": "no route"})

    with pytest.raises(RoutingMalformedResponse):
        await provider.matrix(ORIGIN, DESTS)


async def test_size_mismatch_is_malformed(provider, httpx_mock):
    httpx_mock.add_response(method="GET", json={"code": "Ok", "durations": [[1.0]], "distances": [[1.0]]})

    with pytest.raises(RoutingMalformedResponse):
        await provider.matrix(ORIGIN, DESTS)


async def test_429_is_rate_limited_with_retry_after(provider, httpx_mock):
    httpx_mock.add_response(method="GET", status_code=429, headers={"Retry-After": "7"})

    with pytest.raises(RoutingRateLimited) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.retry_after_s == 7


@pytest.mark.parametrize("code", [401, 403])
async def test_auth_failures_are_unauthorized(provider, httpx_mock, code):
    httpx_mock.add_response(method="GET", status_code=code)

    with pytest.raises(RoutingUnauthorized) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.status_code == code


async def test_bad_request_carries_the_osrm_code(provider, httpx_mock):
    httpx_mock.add_response(method="GET", status_code=400, json={"code": "TooBig", "message": "Too many table coordinates"})

    with pytest.raises(RoutingError) as exc:
        await provider.matrix(ORIGIN, DESTS)

    assert exc.value.tag == "http_400"
    assert "TooBig" in str(exc.value)


async def test_network_error_is_transport_error(provider, httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("refused"))

    with pytest.raises(RoutingTransportError):
        await provider.matrix(ORIGIN, DESTS)


async def test_isochrones_are_local_circles(provider, httpx_mock):
    result = await provider.isochrones(ORIGIN, [600, 1200])

    assert [f["properties"]["value"] for f in result.geojson["features"]] == [600, 1200]
    assert httpx_mock.get_requests() == []
    assert provider.isochrone_requires_quota is False
