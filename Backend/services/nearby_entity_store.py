# Backend/services/nearby_entity_store.py
"""
Access to the host's entities (coordinates, publication status) and to the
opaque per-origin JSON payloads the engine writes (nearby cache per relation,
isochrones).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from app.core.logging import get_logger
from app.models.nearby import Entity
from services.db_service import affected_rows, execute, fetch, fetchrow

logger = get_logger()

# (min_lat, min_lng, max_lat, max_lng)
BBox = Tuple[float, float, float, float]


class EntityStore(ABC):
    @abstractmethod
    async def get_entity(self, entity_id: int) -> Optional[Entity]:
        ...

    @abstractmethod
    async def list_entities(self, entity_type: str, bbox: Optional[BBox] = None) -> List[Entity]:
        """Published entities of one type that have coordinates, optionally inside a bbox."""

    @abstractmethod
    async def list_entity_ids(self, entity_type: str) -> List[int]:
        ...

    @abstractmethod
    async def get_payload(self, origin_id: int, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set_payload(self, origin_id: int, key: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete_payloads(self, origin_id: int, keys: Optional[List[str]] = None) -> int:
        ...


class PostgresEntityStore(EntityStore):
    async def get_entity(self, entity_id: int) -> Optional[Entity]:
        row = await fetchrow(
            """
            SELECT id, entity_type, title, lat, lng
            FROM nearby_entities
            WHERE id = $1
            """,
            int(entity_id),
        )
        return Entity(**dict(row)) if row else None

    async def list_entities(self, entity_type: str, bbox: Optional[BBox] = None) -> List[Entity]:
        sql = """
            SELECT id, entity_type, title, lat, lng
            FROM nearby_entities
            WHERE entity_type = $1
              AND status = 'publish'
              AND lat IS NOT NULL
              AND lng IS NOT NULL
        """
        args: List[Any] = [entity_type]
        if bbox is not None:
            sql += " AND lat BETWEEN $2 AND $4 AND lng BETWEEN $3 AND $5"
            args.extend(bbox)
        rows = await fetch(sql, *args)
        return [Entity(**dict(r)) for r in rows]

    async def list_entity_ids(self, entity_type: str) -> List[int]:
        rows = await fetch(
            """
            SELECT id
            FROM nearby_entities
            WHERE entity_type = $1 AND status = 'publish'
            ORDER BY id
            """,
            entity_type,
        )
        return [int(r["id"]) for r in rows]

    async def get_payload(self, origin_id: int, key: str) -> Optional[Dict[str, Any]]:
        row = await fetchrow(
            """
            SELECT payload
            FROM nearby_payloads
            WHERE origin_id = $1 AND payload_key = $2
            """,
            int(origin_id),
            key,
        )
        if row is None:
            return None
        payload = row["payload"]
        return payload if isinstance(payload, dict) else None

    async def set_payload(self, origin_id: int, key: str, payload: Dict[str, Any]) -> None:
        await execute(
            """
            INSERT INTO nearby_payloads (origin_id, payload_key, payload, updated_at)
            VALUES ($1, $2, $3::jsonb, NOW())
            ON CONFLICT (origin_id, payload_key) DO UPDATE
               SET payload = EXCLUDED.payload,
                   updated_at = NOW()
            """,
            int(origin_id),
            key,
            payload,
        )

    async def delete_payloads(self, origin_id: int, keys: Optional[List[str]] = None) -> int:
        if keys is None:
            status = await execute("DELETE FROM nearby_payloads WHERE origin_id = $1", int(origin_id))
        else:
            status = await execute(
                "DELETE FROM nearby_payloads WHERE origin_id = $1 AND payload_key = ANY($2::text[])",
                int(origin_id),
                list(keys),
            )
        return affected_rows(status)
