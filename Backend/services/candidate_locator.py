# Backend/services/candidate_locator.py
"""
Straight-line pre-filter in front of the routing API: which entities of a
wanted type lie within the search radius of an origin, nearest first.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Optional, Set

from app.config import NearbyConfig
from app.core.logging import get_logger
from app.models.nearby import ENTITY_TYPES, Candidate, Entity
from services.nearby_entity_store import BBox, EntityStore

logger = get_logger()

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(lat: float, lng: float, radius_km: float) -> BBox:
    # Slightly generous; the exact haversine filter runs afterwards.
    # Longitudes may fall outside -180..180 here; bounding_boxes() wraps them.
    d_lat = math.degrees(radius_km * 1000.0 / EARTH_RADIUS_M) * 1.01
    cos_lat = max(0.01, math.cos(math.radians(lat)))
    d_lng = min(180.0, d_lat / cos_lat)
    return (max(-90.0, lat - d_lat), lng - d_lng, min(90.0, lat + d_lat), lng + d_lng)


def bounding_boxes(lat: float, lng: float, radius_km: float) -> List[BBox]:
    """bounding_box() split in two where it crosses the antimeridian."""
    min_lat, min_lng, max_lat, max_lng = bounding_box(lat, lng, radius_km)
    if max_lng - min_lng >= 360.0:
        return [(min_lat, -180.0, max_lat, 180.0)]
    if min_lng < -180.0:
        return [(min_lat, -180.0, max_lat, max_lng), (min_lat, min_lng + 360.0, max_lat, 180.0)]
    if max_lng > 180.0:
        return [(min_lat, min_lng, max_lat, 180.0), (min_lat, -180.0, max_lat, max_lng - 360.0)]
    return [(min_lat, min_lng, max_lat, max_lng)]


class CandidateLocator:
    def __init__(self, entities: EntityStore, config: NearbyConfig) -> None:
        self.entities = entities
        self.config = config

    def radius_for(self, origin_type: str, wanted_type: str) -> float:
        if origin_type == "charging_location" and wanted_type == "poi":
            return self.config.radius_poi_for_charger_km
        if origin_type == "poi" and wanted_type == "charging_location":
            return self.config.radius_charger_for_poi_km
        return self.config.radius_km

    async def find_candidates(
        self,
        lat: float,
        lng: float,
        wanted_type: str,
        radius_km: float,
        max_count: Optional[int] = None,
        *,
        exclude_id: Optional[int] = None,
    ) -> List[Candidate]:
        """
        Published entities of ``wanted_type`` within ``radius_km``, ascending by
        distance, truncated to ``max_count``. An empty list is a normal result.
        """
        limit = self.config.max_candidates if max_count is None else max(0, int(max_count))
        if limit == 0 or radius_km <= 0:
            return []

        radius_m = radius_km * 1000.0
        rows: List[Entity] = []
        for bbox in bounding_boxes(lat, lng, radius_km):
            rows.extend(await self.entities.list_entities(wanted_type, bbox=bbox))

        found: List[Candidate] = []
        seen: Set[int] = set()
        for entity in rows:
            if exclude_id is not None and entity.id == exclude_id:
                continue
            if entity.id in seen:
                continue
            seen.add(entity.id)
            if not entity.has_coords:
                continue
            distance = haversine_m(lat, lng, float(entity.lat), float(entity.lng))
            if distance > radius_m:
                continue
            found.append(
                Candidate(
                    id=entity.id,
                    entity_type=entity.entity_type,
                    title=entity.title,
                    lat=float(entity.lat),
                    lng=float(entity.lng),
                    distance_m=round(distance, 1),
                )
            )

        found.sort(key=lambda c: (c.distance_m, c.id))
        return found[:limit]

    async def candidates_for(self, origin: Entity, wanted_type: str) -> List[Candidate]:
        if not origin.has_coords:
            return []
        return await self.find_candidates(
            float(origin.lat),
            float(origin.lng),
            wanted_type,
            self.radius_for(origin.entity_type, wanted_type),
            exclude_id=origin.id,
        )

    async def has_candidates(self, origin: Entity, wanted_type: str) -> bool:
        if not origin.has_coords:
            return False
        found = await self.find_candidates(
            float(origin.lat),
            float(origin.lng),
            wanted_type,
            self.radius_for(origin.entity_type, wanted_type),
            1,
            exclude_id=origin.id,
        )
        return bool(found)

    async def find_neighbors(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        types: Iterable[str] = ENTITY_TYPES,
        *,
        exclude_id: Optional[int] = None,
    ) -> List[Candidate]:
        """Every entity of the given types around a point, without the candidate cap."""
        neighbors: List[Candidate] = []
        for entity_type in types:
            neighbors.extend(
                await self.find_candidates(
                    lat, lng, entity_type, radius_km, max_count=10_000, exclude_id=exclude_id
                )
            )
        neighbors.sort(key=lambda c: (c.distance_m, c.id))
        return neighbors
