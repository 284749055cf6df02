# -*- coding: utf-8 -*-
"""
OsrmRoutingProvider: OSRM table service over httpx
- GET /table/v1/{profile}/{lng,lat;...} with the origin as the only source
- OSRM has no isochrone endpoint; isochrones are drawn as walking circles
- No rate-limit headers: the quota tracker counts calls locally
"""

from __future__ import annotations

from typing import Optional, Sequence

import httpx

from app.core.logging import get_logger
from services.routing.base import (
    IsochroneResult,
    MatrixResult,
    Point,
    RoutingError,
    RoutingMalformedResponse,
    RoutingProvider,
    RoutingRateLimited,
    RoutingTransportError,
    RoutingUnauthorized,
    as_float_row,
    parse_retry_after,
)
from services.routing.basic_provider import BasicRoutingProvider

logger = get_logger()

DEFAULT_BASE_URL = "https://router.project-osrm.org"
DEFAULT_TIMEOUT_S = 20.0
USER_AGENT = "NearbyEngine/1.0 (osrm)"

# ORS profile names → OSRM profiles
OSRM_PROFILES = {
    "foot-walking": "foot",
    "foot-hiking": "foot",
    "driving-car": "driving",
    "cycling-regular": "bike",
}


def _coord(lat: float, lng: float) -> str:
    return f"{lng:.6f},{lat:.6f}"


class OsrmRoutingProvider(RoutingProvider):
    name = "osrm.matrix"
    isochrone_name = "fallback.circle"
    requires_quota = True
    isochrone_requires_quota = False

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        profile: str = "foot-walking",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        walking_speed_kmh: float = 4.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(profile=profile)
        self.base_url = base_url.rstrip("/")
        self.osrm_profile = OSRM_PROFILES.get(profile, "foot")
        self.timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
        self._headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        self._circles = BasicRoutingProvider(profile=profile, walking_speed_kmh=walking_speed_kmh)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_table(self, origin: Point, destinations: Sequence[Point]) -> httpx.Response:
        coords = ";".join([_coord(*origin)] + [_coord(lat, lng) for lat, lng in destinations])
        url = f"{self.base_url}/table/v1/{self.osrm_profile}/{coords}"
        params = {
            "sources": "0",
            "destinations": ";".join(str(i) for i in range(1, len(destinations) + 1)),
            "annotations": "duration,distance",
        }
        try:
            response = await self._client.get(url, params=params, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.warning("osrm_timeout", timeout_s=self.timeout_s, error=str(e))
            raise RoutingTransportError("timeout calling table") from e
        except httpx.HTTPError as e:
            logger.warning("osrm_network_error", error=str(e))
            raise RoutingTransportError(f"network error calling table: {e}") from e

        logger.debug("osrm_response_received", status_code=response.status_code, destinations=len(destinations))

        headers = dict(response.headers)
        code = response.status_code
        if 200 <= code < 300:
            return response
        if code in (401, 403):
            raise RoutingUnauthorized(f"table rejected the request ({code})", status_code=code, headers=headers)
        if code == 429:
            raise RoutingRateLimited(
                "table rate limited",
                status_code=code,
                retry_after_s=parse_retry_after(response.headers),
                headers=headers,
            )
        try:
            osrm_code = response.json().get("code")
        except (ValueError, AttributeError):
            osrm_code = None
        raise RoutingError(
            f"table returned HTTP {code} ({osrm_code or response.text[:200]})",
            status_code=code,
            headers=headers,
            tag=f"http_{code}",
        )

    async def matrix(self, origin: Point, destinations: Sequence[Point]) -> MatrixResult:
        if not destinations:
            return MatrixResult(durations=[], distances=[])

        response = await self._get_table(origin, destinations)
        headers = dict(response.headers)
        try:
            data = response.json()
            if data.get("code") != "Ok":
                raise ValueError(f"table answered {data.get('code')!r}")
            durations = as_float_row(data["durations"][0])
            distances = as_float_row((data.get("distances") or [[None] * len(destinations)])[0])
        except (ValueError, TypeError, AttributeError, IndexError, KeyError) as e:
            raise RoutingMalformedResponse(
                f"table response unreadable: {e}", status_code=response.status_code, headers=headers
            ) from e

        if len(durations) != len(destinations) or len(distances) != len(destinations):
            raise RoutingMalformedResponse(
                "table response size mismatch", status_code=response.status_code, headers=headers
            )
        return MatrixResult(durations=durations, distances=distances, headers=headers)

    async def isochrones(self, center: Point, ranges_s: Sequence[int]) -> IsochroneResult:
        return await self._circles.isochrones(center, ranges_s)
