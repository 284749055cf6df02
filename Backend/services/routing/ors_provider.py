# -*- coding: utf-8 -*-
"""
OrsRoutingProvider: OpenRouteService matrix + isochrones over httpx
- POST /v2/matrix/{profile} with one source and N destinations
- POST /v2/isochrones/{profile} with time ranges
- Classifies HTTP outcomes into RoutingError subclasses; response headers are
  passed along so the quota tracker can read x-ratelimit-* / retry-after
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

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

logger = get_logger()

DEFAULT_BASE_URL = "https://api.openrouteservice.org"
DEFAULT_TIMEOUT_S = 20.0
USER_AGENT = "NearbyEngine/1.0"


class OrsRoutingProvider(RoutingProvider):
    name = "ors.matrix"
    isochrone_name = "ors.isochrones"
    requires_quota = True

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        profile: str = "foot-walking",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(profile=profile)
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
        self._headers = {
            "Authorization": api_key,
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json, application/geo+json",
            "User-Agent": USER_AGENT,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, endpoint: str, body: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/v2/{endpoint}/{self.profile}"
        try:
            response = await self._client.post(url, json=body, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.warning("ors_timeout", endpoint=endpoint, timeout_s=self.timeout_s, error=str(e))
            raise RoutingTransportError(f"timeout calling {endpoint}") from e
        except httpx.HTTPError as e:
            logger.warning("ors_network_error", endpoint=endpoint, error=str(e))
            raise RoutingTransportError(f"network error calling {endpoint}: {e}") from e

        headers = dict(response.headers)
        logger.debug(
            "ors_response_received",
            endpoint=endpoint,
            status_code=response.status_code,
            retry_after=response.headers.get("retry-after"),
            x_ratelimit_remaining=response.headers.get("x-ratelimit-remaining"),
            x_ratelimit_reset=response.headers.get("x-ratelimit-reset"),
        )

        code = response.status_code
        if 200 <= code < 300:
            return response
        if code in (401, 403):
            raise RoutingUnauthorized(
                f"{endpoint} rejected the API key ({code})", status_code=code, headers=headers
            )
        if code == 429:
            raise RoutingRateLimited(
                f"{endpoint} rate limited",
                status_code=code,
                retry_after_s=parse_retry_after(response.headers),
                headers=headers,
            )
        raise RoutingError(
            f"{endpoint} returned HTTP {code}: {response.text[:200]}",
            status_code=code,
            headers=headers,
            tag=f"http_{code}",
        )

    async def matrix(self, origin: Point, destinations: Sequence[Point]) -> MatrixResult:
        if not destinations:
            return MatrixResult(durations=[], distances=[])

        locations = [[origin[1], origin[0]]] + [[lng, lat] for lat, lng in destinations]
        body = {
            "locations": locations,
            "sources": [0],
            "destinations": list(range(1, len(locations))),
            "metrics": ["distance", "duration"],
        }
        response = await self._post("matrix", body)
        headers = dict(response.headers)

        try:
            data = response.json()
            durations = as_float_row((data.get("durations") or [None])[0])
            distances = as_float_row((data.get("distances") or [[None] * len(destinations)])[0])
        except (ValueError, TypeError, AttributeError, IndexError) as e:
            raise RoutingMalformedResponse(
                f"matrix response unreadable: {e}", status_code=response.status_code, headers=headers
            ) from e

        if len(durations) != len(destinations) or len(distances) != len(destinations):
            raise RoutingMalformedResponse(
                "matrix response size mismatch",
                status_code=response.status_code,
                headers=headers,
            )
        return MatrixResult(durations=durations, distances=distances, headers=headers)

    async def isochrones(self, center: Point, ranges_s: Sequence[int]) -> IsochroneResult:
        body = {
            "locations": [[center[1], center[0]]],
            "range": [int(r) for r in ranges_s],
            "range_type": "time",
        }
        response = await self._post("isochrones", body)
        headers = dict(response.headers)
        try:
            data = response.json()
        except ValueError as e:
            raise RoutingMalformedResponse(
                "isochrone response is not JSON", status_code=response.status_code, headers=headers
            ) from e
        if not isinstance(data, dict) or not isinstance(data.get("features"), list):
            raise RoutingMalformedResponse(
                "isochrone response has no features", status_code=response.status_code, headers=headers
            )
        return IsochroneResult(geojson=data, headers=headers)
