from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from app.core.logging import get_logger
from app.deps.admin_auth import verify_worker_token
from app.models.nearby import (
    CachePayload,
    NearbyItem,
    Progress,
    normalize_entity_type,
    payload_key_for,
    remap_relation,
)
from app.utils.timeutil import parse_iso_ts, utc_iso
from app.workers.nearby_auto_processor import run_auto_processor
from services import nearby_queue_service
from services.nearby_batch_service import is_stale
from services.nearby_engine import NearbyEngine, get_nearby_engine

router = APIRouter(
    prefix="/nearby",
    tags=["nearby"],
)

logger = get_logger()

RATE_LIMITED_COOLDOWN_S = 120
UNAUTHORIZED_COOLDOWN_S = 6 * 3600


class NearbyResponse(BaseModel):
    origin_id: int
    type: str
    stale: bool
    partial: bool
    running: bool
    progress: Progress
    items: List[NearbyItem]
    computed_at: Optional[str] = None
    error: Optional[str] = None
    error_at: Optional[str] = None
    retry_after_s: Optional[int] = None
    next_retry_at: Optional[str] = None
    isochrones: Optional[Dict[str, Any]] = None


def _cooldown_until(payload: CachePayload) -> Optional[float]:
    """Until when a failed payload must not trigger a new recompute."""
    if not payload.error:
        return None
    error_at = parse_iso_ts(payload.error_at)
    if error_at is None:
        return None
    if payload.retry_after_s:
        return error_at + payload.retry_after_s
    if payload.error == "rate_limited":
        return error_at + RATE_LIMITED_COOLDOWN_S
    if payload.error == "unauthorized":
        return error_at + UNAUTHORIZED_COOLDOWN_S
    return None


@router.get("", response_model=NearbyResponse)
async def get_nearby(
    origin_id: int = Query(..., ge=1),
    type: str = Query(..., description="poi | charging_location | rv_spot"),
    limit: int = Query(3, ge=1, le=10),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    relation = normalize_entity_type(type)
    if relation is None:
        raise HTTPException(status_code=400, detail="type must be poi, charging_location or rv_spot")

    origin = await engine.entities.get_entity(origin_id)
    if origin is None:
        raise HTTPException(status_code=404, detail="origin not found")
    relation = remap_relation(origin.entity_type, relation)

    raw = await engine.entities.get_payload(origin_id, payload_key_for(relation))
    payload = CachePayload.model_validate(raw) if raw else CachePayload()
    now = engine.clock()

    stale = is_stale(raw, None, engine.config.cache_ttl_seconds, now)
    running = await engine.recompute.is_running(origin_id, relation)
    next_retry_at: Optional[str] = None

    cooldown_until = _cooldown_until(payload)
    if cooldown_until is not None and cooldown_until > now:
        # Not reported stale while cooling down.
        next_retry_at = utc_iso(cooldown_until)
        stale = False
    elif engine.config.auto_enqueue_on_get and stale and not running:
        await nearby_queue_service.enqueue(origin_id, relation, 0, engine=engine)

    isochrones = None
    if engine.config.isochrones_enabled:
        iso = await engine.entities.get_payload(origin_id, engine.isochrones.payload_key)
        if iso and (iso.get("geojson") or {}).get("features"):
            isochrones = {
                "profile": iso.get("profile"),
                "ranges_s": iso.get("ranges_s"),
                "geojson": iso.get("geojson"),
                "computed_at": iso.get("computed_at"),
                "provider": iso.get("provider"),
                "error": iso.get("error"),
            }

    return NearbyResponse(
        origin_id=origin_id,
        type=relation,
        stale=stale,
        partial=payload.partial,
        running=running,
        progress=payload.progress if raw else Progress(),
        items=payload.items[:limit],
        computed_at=payload.computed_at,
        error=payload.error,
        error_at=payload.error_at,
        retry_after_s=payload.retry_after_s,
        next_retry_at=next_retry_at,
        isochrones=isochrones,
    )


@router.post("/worker/run", status_code=202, dependencies=[Depends(verify_worker_token)])
async def run_worker(
    response: Response,
    sync: bool = Query(False),
    engine: NearbyEngine = Depends(get_nearby_engine),
):
    """Cron / self trigger. Dispatches an auto run, or runs it inline with ?sync=true."""
    if not sync:
        engine.scheduler.dispatch_auto_run()
        logger.info("nearby_worker_dispatched")
        return {"ok": True, "dispatched": True}

    result = await run_auto_processor(engine)
    response.status_code = 200
    return {"ok": True, "dispatched": False, "result": result.model_dump()}
