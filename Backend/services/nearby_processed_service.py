# Backend/services/nearby_processed_service.py
"""
History of finished nearby work (table ``nearby_processed``).

One row per origin, overwritten on every completion. Origins that are queued
again lose their row, so the list only shows work that is actually done.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from app.core.logging import get_logger
from app.models.nearby import ProcessedRecord
from services.db_service import affected_rows, execute, fetch, fetchrow

logger = get_logger()

_COLUMNS = """
    origin_id, origin_type, origin_title, lat, lng, processed_type,
    candidates_count, api_calls_used, processing_time_s, api_provider,
    cache_size_kb, nearby_items_count, iso_features, iso_calls,
    has_nearby, has_isochrones, status, error_message, processing_date
"""


async def upsert_processed(record: ProcessedRecord) -> None:
    data = record.model_dump(exclude={"processing_date"})
    try:
        await execute(
            """
            INSERT INTO nearby_processed (
                origin_id, origin_type, origin_title, lat, lng, processed_type,
                candidates_count, api_calls_used, processing_time_s, api_provider,
                cache_size_kb, nearby_items_count, iso_features, iso_calls,
                has_nearby, has_isochrones, status, error_message, processing_date
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, NOW())
            ON CONFLICT (origin_id) DO UPDATE SET
                origin_type = EXCLUDED.origin_type,
                origin_title = EXCLUDED.origin_title,
                lat = EXCLUDED.lat,
                lng = EXCLUDED.lng,
                processed_type = EXCLUDED.processed_type,
                candidates_count = EXCLUDED.candidates_count,
                api_calls_used = EXCLUDED.api_calls_used,
                processing_time_s = EXCLUDED.processing_time_s,
                api_provider = EXCLUDED.api_provider,
                cache_size_kb = EXCLUDED.cache_size_kb,
                nearby_items_count = EXCLUDED.nearby_items_count,
                iso_features = EXCLUDED.iso_features,
                iso_calls = EXCLUDED.iso_calls,
                has_nearby = EXCLUDED.has_nearby,
                has_isochrones = EXCLUDED.has_isochrones,
                status = EXCLUDED.status,
                error_message = EXCLUDED.error_message,
                processing_date = NOW()
            """,
            data["origin_id"],
            data["origin_type"],
            data["origin_title"],
            data["lat"],
            data["lng"],
            data["processed_type"],
            data["candidates_count"],
            data["api_calls_used"],
            data["processing_time_s"],
            data["api_provider"],
            data["cache_size_kb"],
            data["nearby_items_count"],
            data["iso_features"],
            data["iso_calls"],
            data["has_nearby"],
            data["has_isochrones"],
            data["status"],
            data["error_message"],
        )
    except Exception as e:
        logger.error("nearby_processed_upsert_failed", origin_id=record.origin_id, error=str(e), exc_info=True)
        raise


async def delete_processed(origin_id: int) -> int:
    status = await execute("DELETE FROM nearby_processed WHERE origin_id = $1", int(origin_id))
    return affected_rows(status)


async def get_processed(origin_id: int) -> Optional[ProcessedRecord]:
    row = await fetchrow(f"SELECT {_COLUMNS} FROM nearby_processed WHERE origin_id = $1", int(origin_id))
    return ProcessedRecord(**dict(row)) if row else None


async def list_processed(
    limit: int = 50,
    offset: int = 0,
    origin_type: Optional[str] = None,
) -> List[ProcessedRecord]:
    """Newest first; origins with an active queue item are left out."""
    rows = await fetch(
        f"""
        SELECT {_COLUMNS}
        FROM nearby_processed p
        WHERE ($3::text IS NULL OR p.origin_type = $3)
          AND NOT EXISTS (
              SELECT 1 FROM nearby_queue q
              WHERE q.origin_id = p.origin_id
                AND q.status IN ('pending', 'processing')
          )
        ORDER BY p.processing_date DESC
        LIMIT $1 OFFSET $2
        """,
        int(limit),
        int(offset),
        origin_type,
    )
    return [ProcessedRecord(**dict(r)) for r in rows]


async def get_processed_stats() -> Dict[str, Any]:
    row = await fetchrow(
        """
        SELECT
            COUNT(*)::int AS total,
            COUNT(*) FILTER (WHERE status = 'completed')::int AS completed,
            COUNT(*) FILTER (WHERE status = 'error')::int AS errors,
            COALESCE(SUM(api_calls_used), 0)::int AS api_calls,
            COALESCE(AVG(processing_time_s), 0)::float AS avg_processing_time_s,
            MAX(processing_date) AS last_processed_at
        FROM nearby_processed
        """
    )
    if row is None:
        return {"total": 0, "completed": 0, "errors": 0, "api_calls": 0, "avg_processing_time_s": 0.0}
    stats = dict(row)
    if stats.get("last_processed_at") is not None:
        stats["last_processed_at"] = stats["last_processed_at"].isoformat()
    return stats
