# Backend/services/nearby_batch_service.py
"""
One bounded batch of queued nearby work.

- refuses to dequeue while the daily quota or the per-minute bucket says no
- per item: every relation the origin needs, only the stale ones recomputed
- isochrones refreshed when stale, even if the matrix payloads are fresh
- per-item failures end up in mark_failed; they never abort the batch
"""

from __future__ import annotations

import json
import time
from types import ModuleType
from typing import Any, List, Optional, Tuple

from app.config import NearbyConfig
from app.core.logging import get_logger
from app.models.nearby import (
    BatchResult,
    CachePayload,
    Entity,
    ProcessedRecord,
    QueueItem,
    RecomputeOutcome,
    payload_key_for,
    relations_for,
)
from app.utils.timeutil import parse_iso_ts
from services import nearby_processed_service, nearby_queue_service
from services.nearby_entity_store import EntityStore
from services.nearby_isochrone_service import IsochroneService
from services.nearby_quota_service import QuotaTracker
from services.nearby_recompute_service import NearbyRecomputeService
from services.nearby_scheduler import NearbyScheduler
from services.state_store import Clock

logger = get_logger()


def is_stale(payload: Optional[dict], enqueued_at: Optional[float], ttl_s: float, now: float) -> bool:
    """Missing, partial, errored, past its TTL, or older than the queue item."""
    if not payload:
        return True
    if payload.get("partial") or payload.get("error"):
        return True
    computed = parse_iso_ts(payload.get("computed_at"))
    if computed is None:
        return True
    if now - computed >= ttl_s:
        return True
    if enqueued_at is not None and computed < enqueued_at:
        return True
    return False


class NearbyBatchProcessor:
    def __init__(
        self,
        config: NearbyConfig,
        quota: QuotaTracker,
        recompute: NearbyRecomputeService,
        isochrones: IsochroneService,
        entities: EntityStore,
        scheduler: NearbyScheduler,
        *,
        queue: ModuleType | Any = nearby_queue_service,
        processed: ModuleType | Any = nearby_processed_service,
        clock: Clock = time.time,
    ) -> None:
        self.config = config
        self.quota = quota
        self.recompute = recompute
        self.isochrones = isochrones
        self.entities = entities
        self.scheduler = scheduler
        self.queue = queue
        self.processed = processed
        self.clock = clock

    @property
    def routing_mode(self) -> bool:
        return self.recompute.provider.requires_quota

    async def _gate(self) -> Optional[str]:
        if not self.routing_mode:
            return None
        if not await self.quota.can_proceed("matrix"):
            return "quota"
        decision = await self.quota.try_acquire("matrix", consume=False)
        if not decision.allowed:
            return "rate_limited"
        return None

    async def process_batch(self, max_items: int = 1) -> BatchResult:
        reason = await self._gate()
        if reason is not None:
            next_run_at = await self.quota.next_run_at(("matrix",))
            logger.info("nearby_batch_gated", reason=reason, next_run_at=int(next_run_at))
            return BatchResult(rate_limited=True, reason=reason, next_run_at=next_run_at)

        items = await self.queue.dequeue_batch(max(1, int(max_items)))
        result = BatchResult()
        if not items:
            result.reason = "empty"
            return result

        for item in items:
            if not await self.queue.mark_processing(item.id):
                result.skipped += 1
                continue
            try:
                stop = await self._process_item(item, result)
            except Exception as exc:
                logger.error(
                    "nearby_item_exception",
                    queue_id=item.id,
                    origin_id=item.origin_id,
                    error=str(exc),
                    exc_info=True,
                )
                await self.queue.mark_failed(item.id, f"exception: {exc}")
                result.errors += 1
                continue
            if stop:
                break

        logger.info(
            "nearby_batch_finished",
            processed=result.processed,
            errors=result.errors,
            skipped=result.skipped,
            reason=result.reason,
        )
        return result

    async def _stale_relations(self, origin: Entity, enqueued_at: Optional[float]) -> List[str]:
        ttl = self.config.cache_ttl_seconds
        now = self.clock()
        stale = []
        for relation in relations_for(origin.entity_type):
            payload = await self.entities.get_payload(origin.id, payload_key_for(relation))
            if is_stale(payload, enqueued_at, ttl, now):
                stale.append(relation)
        return stale

    async def _process_item(self, item: QueueItem, result: BatchResult) -> bool:
        """Returns True when the batch has to stop."""
        started = self.clock()
        origin = await self.entities.get_entity(item.origin_id)
        if origin is None:
            await self.queue.mark_failed(item.id, "origin_not_found", terminal=True)
            result.errors += 1
            return False
        enqueued_at = parse_iso_ts(item.created_at)
        stale = await self._stale_relations(origin, enqueued_at)
        outcomes: List[RecomputeOutcome] = []

        for relation in stale:
            outcome = await self.recompute.recompute(origin.id, relation, not_before=enqueued_at)
            outcomes.append(outcome)

            if outcome.status == "rate_limited":
                await self.queue.mark_rate_limited(item.id, outcome.error or "rate_limited")
                next_run_at = await self.quota.next_run_at(("matrix",))
                if self.config.auto_enabled:
                    await self.scheduler.schedule_auto_run(max(0.0, next_run_at - self.clock()))
                result.rate_limited = True
                result.reason = "rate_limited"
                result.next_run_at = next_run_at
                return True

            if outcome.status == "locked":
                await self.queue.release(item.id)
                result.skipped += 1
                return False

            if outcome.status in ("error", "partial"):
                await self.queue.mark_failed(item.id, outcome.error, terminal=not outcome.retryable)
                await self._record(origin, outcomes, started, error=outcome.error)
                result.errors += 1
                if outcome.error == "unauthorized":
                    result.reason = "unauthorized"
                    return True
                return False

        iso = await self.isochrones.ensure_isochrones(origin, not_before=enqueued_at)
        await self._record(origin, outcomes, started, iso_features=iso.features, iso_calls=iso.api_calls)
        await self.queue.mark_completed(item.id)
        await self.queue.delete_other_active(origin.id, item.id)
        result.processed += 1
        logger.info(
            "nearby_item_completed",
            queue_id=item.id,
            origin_id=origin.id,
            recomputed=stale,
            cached=not stale,
        )
        return False

    async def _payload_stats(self, origin_id: int, relations: Tuple[str, ...]) -> Tuple[int, float]:
        items = 0
        size = 0
        for relation in relations:
            raw = await self.entities.get_payload(origin_id, payload_key_for(relation))
            if not raw:
                continue
            size += len(json.dumps(raw))
            try:
                items += len(CachePayload.model_validate(raw).items)
            except ValueError:
                continue
        return items, round(size / 1024.0, 2)

    async def _record(
        self,
        origin: Entity,
        outcomes: List[RecomputeOutcome],
        started: float,
        *,
        error: Optional[str] = None,
        iso_features: int = 0,
        iso_calls: int = 0,
    ) -> None:
        relations = relations_for(origin.entity_type)
        items_count, size_kb = await self._payload_stats(origin.id, relations)
        if error:
            status = "error"
        elif outcomes:
            status = "completed"
        else:
            status = "cached"
        record = ProcessedRecord(
            origin_id=origin.id,
            origin_type=origin.entity_type,
            origin_title=origin.title,
            lat=origin.lat,
            lng=origin.lng,
            processed_type=",".join(payload_key_for(r) for r in relations),
            candidates_count=sum(o.candidates_count for o in outcomes),
            api_calls_used=sum(o.api_calls for o in outcomes) + iso_calls,
            processing_time_s=round(self.clock() - started, 3),
            api_provider=self.recompute.provider.name,
            cache_size_kb=size_kb,
            nearby_items_count=items_count,
            iso_features=iso_features,
            iso_calls=iso_calls,
            has_nearby=items_count > 0,
            has_isochrones=iso_features > 0,
            status=status,
            error_message=error,
        )
        await self.processed.upsert_processed(record)
