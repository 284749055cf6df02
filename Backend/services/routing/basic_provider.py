"""
Haversine fallback used when no routing key is configured.

Durations assume a constant walking speed and isochrones are plain circles,
so results are approximate but complete in a single step.
"""

from __future__ import annotations

import math
from typing import Sequence

from services.candidate_locator import EARTH_RADIUS_M, haversine_m
from services.routing.base import IsochroneResult, MatrixResult, Point, RoutingProvider

MATRIX_WALKING_SPEED_MPS = 1.3
CIRCLE_SEGMENTS = 64
MIN_CIRCLE_RADIUS_M = 50.0


def circle_polygon(lat: float, lng: float, radius_m: float, segments: int = CIRCLE_SEGMENTS) -> list:
    """Closed GeoJSON ring ([lng, lat] pairs) approximating a circle."""
    ang = radius_m / EARTH_RADIUS_M
    lat_r = math.radians(lat)
    lng_r = math.radians(lng)
    ring = []
    for i in range(segments):
        bearing = 2 * math.pi * i / segments
        p_lat = math.asin(
            math.sin(lat_r) * math.cos(ang) + math.cos(lat_r) * math.sin(ang) * math.cos(bearing)
        )
        p_lng = lng_r + math.atan2(
            math.sin(bearing) * math.sin(ang) * math.cos(lat_r),
            math.cos(ang) - math.sin(lat_r) * math.sin(p_lat),
        )
        ring.append([round(math.degrees(p_lng), 6), round(math.degrees(p_lat), 6)])
    ring.append(ring[0])
    return ring


class BasicRoutingProvider(RoutingProvider):
    name = "basic.haversine"
    isochrone_name = "fallback.circle"
    requires_quota = False
    isochrone_requires_quota = False

    def __init__(self, profile: str = "foot-walking", walking_speed_kmh: float = 4.5):
        super().__init__(profile=profile)
        self.walking_speed_kmh = walking_speed_kmh

    async def matrix(self, origin: Point, destinations: Sequence[Point]) -> MatrixResult:
        distances = [round(haversine_m(origin[0], origin[1], lat, lng), 1) for lat, lng in destinations]
        durations = [round(d / MATRIX_WALKING_SPEED_MPS, 1) for d in distances]
        return MatrixResult(durations=durations, distances=distances)

    async def isochrones(self, center: Point, ranges_s: Sequence[int]) -> IsochroneResult:
        speed_mps = self.walking_speed_kmh * 1000.0 / 3600.0
        features = []
        for range_s in ranges_s:
            radius = max(MIN_CIRCLE_RADIUS_M, speed_mps * float(range_s))
            features.append(
                {
                    "type": "Feature",
                    "properties": {
                        "value": int(range_s),
                        "center": [center[1], center[0]],
                        "radius_m": round(radius, 1),
                    },
                    "geometry": {
                        "type": "Polygon",
                        "coordinates": [circle_polygon(center[0], center[1], radius)],
                    },
                }
            )
        return IsochroneResult(geojson={"type": "FeatureCollection", "features": features})
