# Backend/services/nearby_queue_service.py
"""
Durable work list for nearby recomputes (table ``nearby_queue``).

Handles:
- idempotent enqueue: at most one pending/processing row per origin
- dequeue ordering (priority DESC, created_at ASC)
- status transitions, attempts and terminal failure after max_attempts
- ripple enqueue of spatial neighbours when an entity changes
- dead-letter sweep of rows stuck in 'processing'
- maintenance: cleanup, reset, reprioritisation, stats
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from app.core.logging import get_logger
from app.models.nearby import (
    ENTITY_TYPES,
    QueueItem,
    QueueStats,
    normalize_entity_type,
    payload_key_for,
    relations_for,
    remap_relation,
)
from services.db_service import (
    affected_rows,
    execute,
    execute_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    fetchval,
    run_in_transaction,
)
from services import nearby_processed_service

if TYPE_CHECKING:
    from services.nearby_engine import NearbyEngine

logger = get_logger()

DEFAULT_MAX_ATTEMPTS = 3
AFFECTED_PRIORITY = 2
SELF_PRIORITY = 1

_QUEUE_COLUMNS = """
    id, origin_id, origin_type, priority, status, attempts, max_attempts,
    error_message, created_at, updated_at, processed_at
"""


def _engine(engine: Optional["NearbyEngine"]) -> "NearbyEngine":
    if engine is not None:
        return engine
    from services.nearby_engine import get_nearby_engine

    return get_nearby_engine()


def _to_item(row: Any) -> QueueItem:
    return QueueItem(**dict(row))


# ----------------------------------------------------------------------
# Enqueue
# ----------------------------------------------------------------------
async def has_active_item(origin_id: int) -> bool:
    row = await fetchrow(
        """
        SELECT id
        FROM nearby_queue
        WHERE origin_id = $1 AND status IN ('pending', 'processing')
        LIMIT 1
        """,
        int(origin_id),
    )
    return row is not None


async def enqueue(
    origin_id: int,
    relation_type: str,
    priority: int = 0,
    *,
    engine: Optional["NearbyEngine"] = None,
    dispatch: bool = True,
) -> bool:
    """
    Queue a recompute for ``origin_id``.

    Returns False (no-op) when the origin already has an active item or has
    no candidates within its search radius.
    """
    relation = normalize_entity_type(relation_type, default="charging_location")
    eng = _engine(engine)

    try:
        if await has_active_item(origin_id):
            logger.debug("nearby_enqueue_skipped_active", origin_id=origin_id, relation_type=relation)
            return False

        origin = await eng.entities.get_entity(origin_id)
        if origin is not None:
            relation = remap_relation(origin.entity_type, relation)
        if origin is None or not await eng.locator.has_candidates(origin, relation):
            logger.debug("nearby_enqueue_skipped_no_candidates", origin_id=origin_id, relation_type=relation)
            return False

        # The partial unique index on active rows makes a concurrent double insert a no-op.
        row = await fetchrow(
            """
            INSERT INTO nearby_queue (origin_id, origin_type, priority, status, max_attempts)
            VALUES ($1, $2, $3, 'pending', $4)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            int(origin_id),
            origin.entity_type,
            int(priority),
            DEFAULT_MAX_ATTEMPTS,
        )
        if row is None:
            return False

        await nearby_processed_service.delete_processed(origin_id)
        logger.info(
            "nearby_enqueued",
            queue_id=row["id"],
            origin_id=origin_id,
            relation_type=relation,
            priority=priority,
        )
    except Exception as e:
        logger.error(
            "nearby_enqueue_failed",
            origin_id=origin_id,
            relation_type=relation,
            error=str(e),
            exc_info=True,
        )
        raise

    if dispatch and eng.config.auto_enabled:
        eng.scheduler.dispatch_auto_run()
    return True


async def enqueue_affected(
    changed_origin_id: int,
    *,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    entity_type: Optional[str] = None,
    engine: Optional["NearbyEngine"] = None,
) -> int:
    """
    Ripple a change out to every entity within the affected radius. Each
    neighbour is queued for the relation the changed entity belongs to.
    Coordinates can be passed for an entity that no longer exists.
    """
    eng = _engine(engine)
    if lat is None or lng is None or entity_type is None:
        changed = await eng.entities.get_entity(changed_origin_id)
        if changed is None or not changed.has_coords:
            return 0
        lat, lng, entity_type = float(changed.lat), float(changed.lng), changed.entity_type

    neighbors = await eng.locator.find_neighbors(
        lat, lng, eng.config.affected_radius_km, ENTITY_TYPES, exclude_id=changed_origin_id
    )
    queued = 0
    for neighbor in neighbors:
        # enqueue() remaps a neighbour of the same type
        if await enqueue(neighbor.id, entity_type, AFFECTED_PRIORITY, engine=eng, dispatch=False):
            queued += 1

    logger.info(
        "nearby_affected_enqueued",
        origin_id=changed_origin_id,
        neighbors=len(neighbors),
        queued=queued,
    )
    if queued and eng.config.auto_enabled:
        eng.scheduler.dispatch_auto_run()
    return queued


async def enqueue_all(
    entity_type: Optional[str] = None,
    *,
    priority: int = SELF_PRIORITY,
    engine: Optional["NearbyEngine"] = None,
) -> Dict[str, int]:
    """Queue every published entity (optionally one type) for its primary relation."""
    eng = _engine(engine)
    types = [normalize_entity_type(entity_type)] if entity_type else list(ENTITY_TYPES)
    counts: Dict[str, int] = {}
    for etype in types:
        if etype is None:
            continue
        relation = relations_for(etype)[0]
        queued = 0
        for origin_id in await eng.entities.list_entity_ids(etype):
            if await enqueue(origin_id, relation, priority, engine=eng, dispatch=False):
                queued += 1
        counts[etype] = queued
    logger.info("nearby_enqueue_all_finished", counts=counts)
    if any(counts.values()) and eng.config.auto_enabled:
        eng.scheduler.dispatch_auto_run()
    return counts


async def on_entity_saved(entity_id: int, *, engine: Optional["NearbyEngine"] = None) -> Dict[str, int]:
    eng = _engine(engine)
    entity = await eng.entities.get_entity(entity_id)
    if entity is None:
        return {"self": 0, "affected": 0}
    own = 0
    for relation in relations_for(entity.entity_type):
        if await enqueue(entity.id, relation, SELF_PRIORITY, engine=eng):
            own += 1
            break
    affected = await enqueue_affected(entity.id, engine=eng)
    return {"self": own, "affected": affected}


async def on_entity_deleted(
    entity_id: int,
    *,
    lat: float,
    lng: float,
    entity_type: str,
    engine: Optional["NearbyEngine"] = None,
) -> int:
    eng = _engine(engine)
    await eng.entities.delete_payloads(entity_id)
    await delete_for_origin(entity_id)
    await nearby_processed_service.delete_processed(entity_id)
    return await enqueue_affected(entity_id, lat=lat, lng=lng, entity_type=entity_type, engine=eng)


async def requeue(
    origin_ids: Sequence[int],
    relation_type: Optional[str] = None,
    *,
    engine: Optional["NearbyEngine"] = None,
) -> Dict[str, List[Any]]:
    """
    Force origins back into the queue. Active items move to the front; others
    lose their processed record and cached payload and are queued again.
    """
    eng = _engine(engine)
    enqueued: List[Any] = []
    skipped: List[Any] = []

    for origin_id in origin_ids:
        entity = await eng.entities.get_entity(origin_id)
        if entity is None:
            skipped.append([origin_id, "not_found"])
            continue

        active = await fetchrow(
            "SELECT id FROM nearby_queue WHERE origin_id = $1 AND status IN ('pending', 'processing') LIMIT 1",
            int(origin_id),
        )
        if active is not None:
            await move_to_front(int(active["id"]))
            enqueued.append([origin_id, "moved"])
            continue

        relations = [normalize_entity_type(relation_type)] if relation_type else list(relations_for(entity.entity_type))
        await nearby_processed_service.delete_processed(origin_id)
        await eng.entities.delete_payloads(origin_id, [payload_key_for(r) for r in relations if r])

        if relations and await enqueue(origin_id, relations[0], SELF_PRIORITY, engine=eng):
            enqueued.append([origin_id, relations[0]])
        else:
            skipped.append([origin_id, "no_candidates"])

    return {"enqueued": enqueued, "skipped": skipped}


# ----------------------------------------------------------------------
# Dequeue + transitions
# ----------------------------------------------------------------------
async def dequeue_batch(limit: int = 1) -> List[QueueItem]:
    rows = await fetch(
        f"""
        SELECT {_QUEUE_COLUMNS}
        FROM nearby_queue
        WHERE status = 'pending'
        ORDER BY priority DESC, created_at ASC, id ASC
        LIMIT $1
        """,
        max(1, int(limit)),
    )
    return [_to_item(r) for r in rows]


async def get_item(queue_id: int) -> Optional[QueueItem]:
    row = await fetchrow(f"SELECT {_QUEUE_COLUMNS} FROM nearby_queue WHERE id = $1", int(queue_id))
    return _to_item(row) if row else None


async def mark_processing(queue_id: int) -> bool:
    """pending → processing. False when another run claimed the item first."""
    row = await fetchrow(
        """
        UPDATE nearby_queue
        SET status = 'processing', updated_at = NOW()
        WHERE id = $1 AND status = 'pending'
        RETURNING id
        """,
        int(queue_id),
    )
    return row is not None


async def mark_completed(queue_id: int) -> None:
    await execute(
        """
        UPDATE nearby_queue
        SET status = 'completed', error_message = NULL,
            processed_at = NOW(), updated_at = NOW()
        WHERE id = $1
        """,
        int(queue_id),
    )


async def mark_failed(queue_id: int, error: Optional[str] = None, *, terminal: bool = False) -> str:
    """
    Count a failed attempt. Returns the resulting status: back to 'pending'
    while attempts remain, 'failed' once max_attempts is reached (or at once
    when ``terminal``).
    """
    row = await fetchrow(
        """
        UPDATE nearby_queue
        SET attempts = attempts + 1,
            status = CASE WHEN $3 OR attempts + 1 >= max_attempts THEN 'failed' ELSE 'pending' END,
            error_message = $2,
            updated_at = NOW()
        WHERE id = $1
        RETURNING status, attempts
        """,
        int(queue_id),
        (error or "")[:1000] or None,
        bool(terminal),
    )
    status = row["status"] if row else "failed"
    logger.info(
        "nearby_queue_item_failed",
        queue_id=queue_id,
        status=status,
        attempts=row["attempts"] if row else None,
        error=error,
    )
    return status


async def mark_rate_limited(queue_id: int, reason: str = "rate_limited") -> None:
    """Back to pending without consuming an attempt."""
    await execute(
        """
        UPDATE nearby_queue
        SET status = 'pending', error_message = $2, updated_at = NOW()
        WHERE id = $1 AND status = 'processing'
        """,
        int(queue_id),
        reason,
    )


async def release(queue_id: int) -> None:
    await mark_rate_limited(queue_id, reason="busy")


async def delete_other_active(origin_id: int, keep_id: int) -> int:
    status = await execute(
        """
        DELETE FROM nearby_queue
        WHERE origin_id = $1 AND id <> $2 AND status IN ('pending', 'processing')
        """,
        int(origin_id),
        int(keep_id),
    )
    return affected_rows(status)


async def delete_for_origin(origin_id: int) -> int:
    status = await execute("DELETE FROM nearby_queue WHERE origin_id = $1", int(origin_id))
    return affected_rows(status)


async def count_pending() -> int:
    return int(await fetchval("SELECT COUNT(*) FROM nearby_queue WHERE status = 'pending'") or 0)


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------
async def sweep_stuck_items(timeout_minutes: int = 15) -> int:
    """Dead-letter sweep: rows stuck in 'processing' go back to pending (attempt counted)."""
    status = await execute(
        """
        UPDATE nearby_queue
        SET attempts = attempts + 1,
            status = CASE WHEN attempts + 1 >= max_attempts THEN 'failed' ELSE 'pending' END,
            error_message = 'stuck_processing_timeout',
            updated_at = NOW()
        WHERE status = 'processing'
          AND updated_at < NOW() - make_interval(mins => $1::int)
        """,
        max(1, int(timeout_minutes)),
    )
    swept = affected_rows(status)
    if swept:
        logger.warning("nearby_stuck_items_swept", count=swept, timeout_minutes=timeout_minutes)
    return swept


async def cleanup_old_items(days: int = 30) -> int:
    status = await execute(
        """
        DELETE FROM nearby_queue
        WHERE status = 'completed'
          AND COALESCE(processed_at, updated_at) < NOW() - make_interval(days => $1::int)
        """,
        max(1, int(days)),
    )
    removed = affected_rows(status)
    logger.info("nearby_queue_cleanup", removed=removed, days=days)
    return removed


async def reset_failed_items() -> int:
    """
    Give failed origins another run: the newest failed row per origin goes
    back to pending unless that origin is already queued again.
    """
    status = await execute(
        """
        UPDATE nearby_queue
        SET status = 'pending', attempts = 0, error_message = NULL, updated_at = NOW()
        WHERE id IN (
            SELECT DISTINCT ON (origin_id) id
            FROM nearby_queue
            WHERE status = 'failed'
            ORDER BY origin_id, updated_at DESC, id DESC
        )
          AND NOT EXISTS (
            SELECT 1
            FROM nearby_queue active
            WHERE active.origin_id = nearby_queue.origin_id
              AND active.status IN ('pending', 'processing')
          )
        """
    )
    return affected_rows(status)


async def move_to_front(queue_id: int) -> Optional[int]:
    async with run_in_transaction() as conn:
        top = await fetchrow_with_conn(
            conn,
            "SELECT COALESCE(MAX(priority), 0) AS top FROM nearby_queue WHERE status IN ('pending', 'processing')",
        )
        new_priority = int(top["top"]) + 1 if top else 1
        status = await execute_with_conn(
            conn,
            "UPDATE nearby_queue SET priority = $2, updated_at = NOW() WHERE id = $1",
            int(queue_id),
            new_priority,
        )
    return new_priority if affected_rows(status) else None


async def set_priority(queue_id: int, priority: int) -> bool:
    status = await execute(
        "UPDATE nearby_queue SET priority = $2, updated_at = NOW() WHERE id = $1",
        int(queue_id),
        int(priority),
    )
    return affected_rows(status) > 0


async def get_stats() -> QueueStats:
    rows = await fetch("SELECT status, COUNT(*)::int AS n FROM nearby_queue GROUP BY status")
    stats: Dict[str, int] = {r["status"]: int(r["n"]) for r in rows}
    return QueueStats(
        total=sum(stats.values()),
        pending=stats.get("pending", 0),
        processing=stats.get("processing", 0),
        completed=stats.get("completed", 0),
        failed=stats.get("failed", 0),
    )


async def list_items(status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[QueueItem]:
    if status:
        rows = await fetch(
            f"""
            SELECT {_QUEUE_COLUMNS}
            FROM nearby_queue
            WHERE status = $1
            ORDER BY priority DESC, created_at ASC
            LIMIT $2 OFFSET $3
            """,
            status,
            int(limit),
            int(offset),
        )
    else:
        rows = await fetch(
            f"""
            SELECT {_QUEUE_COLUMNS}
            FROM nearby_queue
            ORDER BY updated_at DESC
            LIMIT $1 OFFSET $2
            """,
            int(limit),
            int(offset),
        )
    return [_to_item(r) for r in rows]
