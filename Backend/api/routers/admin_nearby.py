from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.deps.admin_auth import AdminUser, verify_admin_user
from app.models.nearby import (
    ENTITY_TYPES,
    ProcessedRecord,
    QueueItem,
    normalize_entity_type,
    relations_for,
)
from app.workers.nearby_auto_processor import get_last_run
from services import nearby_processed_service, nearby_queue_service
from services.nearby_engine import NearbyEngine, get_nearby_engine

logger = get_logger()

router = APIRouter(prefix="/admin/nearby", tags=["admin-nearby"])


class RequeueRequest(BaseModel):
    origin_ids: List[int] = Field(..., min_length=1)
    relation_type: Optional[str] = None


class RecomputeRequest(BaseModel):
    origin_id: int
    relation_type: Optional[str] = None
    sync: bool = False


class PriorityRequest(BaseModel):
    priority: int


class EntityDeletedRequest(BaseModel):
    lat: float
    lng: float
    entity_type: str


class EnqueueAllRequest(BaseModel):
    entity_type: Optional[str] = None


def _relation_or_400(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    relation = normalize_entity_type(value)
    if relation is None:
        raise HTTPException(status_code=400, detail=f"unknown relation type: {value}")
    return relation


@router.get("/stats")
async def get_nearby_stats(
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    queue_stats = await nearby_queue_service.get_stats()
    processed_stats = await nearby_processed_service.get_processed_stats()

    quota = {}
    buckets = {}
    for category in ("matrix", "isochrones"):
        quota[category] = (await engine.quota.snapshot(category)).model_dump()
        buckets[category] = await engine.quota.bucket_state(category)

    return {
        "provider": engine.provider.name,
        "routing_enabled": engine.config.routing_enabled,
        "queue": queue_stats.model_dump(),
        "processed": processed_stats,
        "quota": quota,
        "buckets": buckets,
        "scheduled_recomputes": await engine.scheduler.count_scheduled_recomputes(),
        "next_auto_run_at": await engine.scheduler.next_auto_run_at(),
        "last_auto_run": await get_last_run(engine),
    }


@router.get("/queue", response_model=List[QueueItem])
async def list_queue(
    status: Optional[str] = Query(None, pattern="^(pending|processing|completed|failed)$"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: AdminUser = Depends(verify_admin_user),
):
    return await nearby_queue_service.list_items(status=status, limit=limit, offset=offset)


@router.post("/queue/{queue_id}/front")
async def move_queue_item_to_front(
    queue_id: int,
    admin: AdminUser = Depends(verify_admin_user),
):
    priority = await nearby_queue_service.move_to_front(queue_id)
    if priority is None:
        raise HTTPException(status_code=404, detail="queue item not found")
    logger.info("nearby_admin_move_to_front", queue_id=queue_id, priority=priority, admin=admin.email)
    return {"ok": True, "queue_id": queue_id, "priority": priority}


@router.post("/queue/{queue_id}/priority")
async def set_queue_item_priority(
    queue_id: int,
    body: PriorityRequest,
    admin: AdminUser = Depends(verify_admin_user),
):
    if not await nearby_queue_service.set_priority(queue_id, body.priority):
        raise HTTPException(status_code=404, detail="queue item not found")
    return {"ok": True, "queue_id": queue_id, "priority": body.priority}


@router.post("/queue/reset-failed")
async def reset_failed(admin: AdminUser = Depends(verify_admin_user)):
    count = await nearby_queue_service.reset_failed_items()
    logger.info("nearby_admin_reset_failed", count=count, admin=admin.email)
    return {"ok": True, "reset": count}


@router.post("/queue/cleanup")
async def cleanup_queue(
    days: Optional[int] = Query(None, ge=1, le=365),
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    removed = await nearby_queue_service.cleanup_old_items(days or engine.config.queue_retention_days)
    return {"ok": True, "removed": removed}


@router.post("/queue/sweep")
async def sweep_queue(
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    swept = await nearby_queue_service.sweep_stuck_items(engine.config.stuck_timeout_minutes)
    return {"ok": True, "swept": swept}


@router.post("/enqueue-all")
async def enqueue_all(
    body: EnqueueAllRequest,
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    entity_type = _relation_or_400(body.entity_type)
    counts = await nearby_queue_service.enqueue_all(entity_type, engine=engine)
    logger.info("nearby_admin_enqueue_all", counts=counts, admin=admin.email)
    return {"ok": True, "enqueued": counts}


@router.post("/requeue")
async def requeue(
    body: RequeueRequest,
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    relation = _relation_or_400(body.relation_type)
    result = await nearby_queue_service.requeue(body.origin_ids, relation, engine=engine)
    logger.info(
        "nearby_admin_requeue",
        enqueued=len(result["enqueued"]),
        skipped=len(result["skipped"]),
        admin=admin.email,
    )
    return {"ok": True, **result}


@router.get("/processed", response_model=List[ProcessedRecord])
async def list_processed(
    origin_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: AdminUser = Depends(verify_admin_user),
):
    if origin_type is not None and origin_type not in ENTITY_TYPES:
        raise HTTPException(status_code=400, detail=f"unknown origin type: {origin_type}")
    return await nearby_processed_service.list_processed(limit=limit, offset=offset, origin_type=origin_type)


@router.post("/recompute")
async def recompute(
    body: RecomputeRequest,
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    """Recompute one origin now (sync) or put it at the head of the queue."""
    origin = await engine.entities.get_entity(body.origin_id)
    if origin is None:
        raise HTTPException(status_code=404, detail="origin not found")

    relation = _relation_or_400(body.relation_type) or relations_for(origin.entity_type)[0]

    if body.sync:
        outcome = await engine.recompute.recompute(origin.id, relation)
        logger.info(
            "nearby_admin_recompute",
            origin_id=origin.id,
            relation_type=outcome.relation_type,
            status=outcome.status,
            admin=admin.email,
        )
        return {"ok": outcome.status in ("completed", "locked"), "outcome": outcome.model_dump()}

    result = await nearby_queue_service.requeue([origin.id], relation, engine=engine)
    return {"ok": True, "queued": bool(result["enqueued"]), **result}


@router.post("/entities/{entity_id}/saved")
async def entity_saved(
    entity_id: int,
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    result = await nearby_queue_service.on_entity_saved(entity_id, engine=engine)
    return {"ok": True, **result}


@router.post("/entities/{entity_id}/deleted")
async def entity_deleted(
    entity_id: int,
    body: EntityDeletedRequest,
    admin: AdminUser = Depends(verify_admin_user),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    entity_type = _relation_or_400(body.entity_type)
    affected = await nearby_queue_service.on_entity_deleted(
        entity_id, lat=body.lat, lng=body.lng, entity_type=entity_type, engine=engine
    )
    return {"ok": True, "affected": affected}
