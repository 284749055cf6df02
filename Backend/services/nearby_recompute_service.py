# Backend/services/nearby_recompute_service.py
"""
Nearby recompute: walking distance/duration from one origin to its candidates.

Handles:
- single-flight per (origin, relation type) through the state store
- chunked matrix calls gated by the quota tracker
- a partial cache payload after every chunk, so readers always see a valid,
  growing prefix and a later run can resume where this one stopped
- error classification into payload tags + retry hints
- isochrones after a complete result
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional

from app.config import NearbyConfig
from app.core.logging import get_logger
from app.models.nearby import (
    CachePayload,
    Candidate,
    Entity,
    NearbyItem,
    Progress,
    RecomputeOutcome,
    normalize_entity_type,
    payload_key_for,
    remap_relation,
)
from app.utils.timeutil import utc_iso
from services.candidate_locator import CandidateLocator
from services.nearby_entity_store import EntityStore
from services.nearby_isochrone_service import IsochroneService
from services.nearby_quota_service import QuotaTracker
from services.nearby_scheduler import NearbyScheduler
from services.routing import (
    RoutingError,
    RoutingProvider,
    RoutingRateLimited,
    RoutingUnauthorized,
)
from services.state_store import Clock, StateStore, single_flight

logger = get_logger()

LOCK_TTL_S = 5 * 60
RATE_LIMITED_RETRY_S = 120
UNAUTHORIZED_RETRY_S = 6 * 60 * 60


def _sort_key(item: NearbyItem):
    # Unroutable candidates (no duration) go last.
    return (item.duration_s is None, item.duration_s or 0.0, item.distance_m or 0.0, item.candidate_id)


class NearbyRecomputeService:
    def __init__(
        self,
        config: NearbyConfig,
        state: StateStore,
        entities: EntityStore,
        quota: QuotaTracker,
        locator: CandidateLocator,
        provider: RoutingProvider,
        isochrones: IsochroneService,
        scheduler: NearbyScheduler,
        clock: Clock = time.time,
    ) -> None:
        self.config = config
        self.state = state
        self.entities = entities
        self.quota = quota
        self.locator = locator
        self.provider = provider
        self.isochrones = isochrones
        self.scheduler = scheduler
        self.clock = clock

    @staticmethod
    def lock_key(origin_id: int, relation_type: str) -> str:
        return f"nearby:lock:{int(origin_id)}:{relation_type}"

    async def is_running(self, origin_id: int, relation_type: str) -> bool:
        return await self.state.get(self.lock_key(origin_id, relation_type)) is not None

    # ------------------------------------------------------------------
    # Payload writing
    # ------------------------------------------------------------------
    async def _write(
        self,
        origin_id: int,
        relation_type: str,
        items: List[NearbyItem],
        *,
        total: int,
        partial: bool,
        error: Optional[str] = None,
        retry_after_s: Optional[int] = None,
    ) -> CachePayload:
        now = self.clock()
        payload = CachePayload(
            computed_at=utc_iso(now),
            items=list(items),
            partial=partial,
            progress=Progress(done=len(items), total=total),
            provider=self.provider.name,
            error=error,
            error_at=utc_iso(now) if error else None,
            retry_after_s=retry_after_s,
        )
        await self.entities.set_payload(
            origin_id, payload_key_for(relation_type), payload.model_dump(exclude_none=True)
        )
        return payload

    async def _annotate_error(self, origin_id: int, relation_type: str, error: str) -> None:
        """Mark the current payload as failed without dropping the items it already has."""
        key = payload_key_for(relation_type)
        current = await self.entities.get_payload(origin_id, key) or {"items": [], "partial": True}
        current["error"] = error
        current["error_at"] = utc_iso(self.clock())
        await self.entities.set_payload(origin_id, key, current)

    def _items_for(self, chunk: List[Candidate], durations, distances) -> List[NearbyItem]:
        items = []
        for candidate, duration, distance in zip(chunk, durations, distances):
            items.append(
                NearbyItem(
                    candidate_id=candidate.id,
                    candidate_type=candidate.entity_type,
                    title=candidate.title,
                    duration_s=round(duration, 1) if duration is not None else None,
                    distance_m=round(distance, 1) if distance is not None else None,
                    direct_m=candidate.distance_m,
                    provider=self.provider.name,
                    profile=self.provider.profile,
                )
            )
        return items

    async def _resume_prefix(self, origin_id: int, relation_type: str, candidates: List[Candidate]) -> List[NearbyItem]:
        """Items of an earlier partial run, when all of them are still candidates."""
        raw = await self.entities.get_payload(origin_id, payload_key_for(relation_type))
        if not raw or not raw.get("partial"):
            return []
        try:
            previous = CachePayload.model_validate(raw)
        except ValueError:
            return []
        wanted = {c.id for c in candidates}
        done_ids = [item.candidate_id for item in previous.items]
        if not done_ids or not set(done_ids) <= wanted or len(set(done_ids)) != len(done_ids):
            return []
        return list(previous.items)

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------
    async def recompute(
        self,
        origin_id: int,
        relation_type: str,
        *,
        not_before: Optional[float] = None,
    ) -> RecomputeOutcome:
        """
        ``not_before`` is when the origin last changed; isochrones computed
        before it are refreshed along with the result.
        """
        relation = normalize_entity_type(relation_type)
        if relation is None:
            raise ValueError(f"unknown relation type: {relation_type!r}")

        origin = await self.entities.get_entity(origin_id)
        if origin is None:
            await self._write(origin_id, relation, [], total=0, partial=False, error="origin_not_found")
            logger.warning("nearby_origin_not_found", origin_id=origin_id, relation_type=relation)
            return RecomputeOutcome(
                origin_id=origin_id, relation_type=relation, status="error",
                error="origin_not_found", retryable=False,
            )

        relation = remap_relation(origin.entity_type, relation)

        async with single_flight(self.state, self.lock_key(origin_id, relation), LOCK_TTL_S) as acquired:
            if not acquired:
                logger.info("nearby_recompute_locked", origin_id=origin_id, relation_type=relation)
                return RecomputeOutcome(origin_id=origin_id, relation_type=relation, status="locked")

            try:
                return await self._recompute_locked(origin, relation, not_before)
            except Exception as exc:
                logger.error(
                    "nearby_recompute_exception",
                    origin_id=origin_id,
                    relation_type=relation,
                    error=str(exc),
                    exc_info=True,
                )
                await self._annotate_error(origin_id, relation, "exception")
                raise

    async def _recompute_locked(
        self, origin: Entity, relation: str, not_before: Optional[float] = None
    ) -> RecomputeOutcome:
        started = self.clock()
        log = logger.bind(origin_id=origin.id, relation_type=relation, provider=self.provider.name)

        if not origin.has_coords:
            await self._write(origin.id, relation, [], total=0, partial=False, error="missing_coords")
            log.warning("nearby_missing_coords")
            return RecomputeOutcome(
                origin_id=origin.id, relation_type=relation, status="error",
                error="missing_coords", retryable=False,
            )

        candidates = await self.locator.candidates_for(origin, relation)
        if not candidates:
            await self._write(origin.id, relation, [], total=0, partial=False)
            log.info("nearby_no_candidates")
            return RecomputeOutcome(
                origin_id=origin.id, relation_type=relation, status="completed", provider=self.provider.name
            )

        if not self.provider.requires_quota:
            return await self._recompute_basic(origin, relation, candidates, not_before)

        total = len(candidates)
        items = await self._resume_prefix(origin.id, relation, candidates)
        done_ids = {item.candidate_id for item in items}
        remaining = [c for c in candidates if c.id not in done_ids]
        if items:
            log.info("nearby_recompute_resumed", done=len(items), total=total)

        chunk_size = await self.quota.recommended_batch_size()
        api_calls = 0
        origin_point = (float(origin.lat), float(origin.lng))

        for offset in range(0, len(remaining), chunk_size):
            chunk = remaining[offset:offset + chunk_size]

            decision = await self.quota.try_acquire("matrix")
            if not decision.allowed:
                wait = int(decision.wait_seconds or RATE_LIMITED_RETRY_S)
                await self._write(
                    origin.id, relation, items, total=total, partial=True,
                    error="rate_limited", retry_after_s=wait,
                )
                log.info("nearby_recompute_paused", done=len(items), total=total, wait_seconds=wait)
                return RecomputeOutcome(
                    origin_id=origin.id, relation_type=relation, status="rate_limited",
                    error="rate_limited", retry_after_s=wait, api_calls=api_calls,
                    candidates_count=total, items_count=len(items), provider=self.provider.name,
                )

            api_calls += 1
            try:
                result = await self.provider.matrix(origin_point, [(c.lat, c.lng) for c in chunk])
            except RoutingError as e:
                await self.quota.record_call("matrix")
                if e.headers:
                    await self.quota.record_response_headers(e.headers, category="matrix")
                return await self._handle_matrix_error(e, origin, relation, items, total, api_calls)

            await self.quota.record_call("matrix")
            await self.quota.record_response_headers(result.headers, category="matrix")

            items.extend(self._items_for(chunk, result.durations, result.distances))
            await self._write(origin.id, relation, items, total=total, partial=True)
            log.info("nearby_chunk_completed", done=len(items), total=total, chunk=len(chunk))

            if offset + chunk_size < len(remaining) and self.config.chunk_throttle_ms > 0:
                await asyncio.sleep(self.config.chunk_throttle_ms / 1000.0)

        items.sort(key=_sort_key)
        await self._write(origin.id, relation, items, total=total, partial=False)
        log.info(
            "nearby_recompute_completed",
            items=len(items),
            api_calls=api_calls,
            duration_ms=int((self.clock() - started) * 1000),
        )

        await self._refresh_isochrones(origin, not_before)
        return RecomputeOutcome(
            origin_id=origin.id, relation_type=relation, status="completed",
            api_calls=api_calls, candidates_count=total, items_count=len(items),
            provider=self.provider.name,
        )

    async def _recompute_basic(
        self,
        origin: Entity,
        relation: str,
        candidates: List[Candidate],
        not_before: Optional[float] = None,
    ) -> RecomputeOutcome:
        result = await self.provider.matrix(
            (float(origin.lat), float(origin.lng)), [(c.lat, c.lng) for c in candidates]
        )
        items = self._items_for(candidates, result.durations, result.distances)
        items.sort(key=_sort_key)
        await self._write(origin.id, relation, items, total=len(candidates), partial=False)
        logger.info(
            "nearby_recompute_completed",
            origin_id=origin.id,
            relation_type=relation,
            provider=self.provider.name,
            items=len(items),
            api_calls=0,
        )
        await self._refresh_isochrones(origin, not_before)
        return RecomputeOutcome(
            origin_id=origin.id, relation_type=relation, status="completed",
            candidates_count=len(candidates), items_count=len(items), provider=self.provider.name,
        )

    async def _handle_matrix_error(
        self,
        error: RoutingError,
        origin: Entity,
        relation: str,
        items: List[NearbyItem],
        total: int,
        api_calls: int,
    ) -> RecomputeOutcome:
        common: Dict[str, object] = dict(
            origin_id=origin.id, relation_type=relation, api_calls=api_calls,
            candidates_count=total, items_count=len(items), provider=self.provider.name,
        )

        if isinstance(error, RoutingRateLimited):
            retry = int(error.retry_after_s or RATE_LIMITED_RETRY_S)
            await self._write(origin.id, relation, items, total=total, partial=True, error="rate_limited", retry_after_s=retry)
            await self.scheduler.schedule_recompute(origin.id, relation, retry)
            logger.warning("nearby_matrix_rate_limited", origin_id=origin.id, relation_type=relation, retry_after_s=retry)
            return RecomputeOutcome(status="rate_limited", error="rate_limited", retry_after_s=retry, **common)

        if isinstance(error, RoutingUnauthorized):
            await self._write(
                origin.id, relation, items, total=total, partial=True,
                error="unauthorized", retry_after_s=UNAUTHORIZED_RETRY_S,
            )
            await self.quota.mark_daily_quota_exhausted("matrix", error.status_code)
            logger.error(
                "nearby_matrix_unauthorized",
                origin_id=origin.id,
                relation_type=relation,
                status_code=error.status_code,
            )
            return RecomputeOutcome(
                status="error", error="unauthorized", retry_after_s=UNAUTHORIZED_RETRY_S, **common
            )

        await self._write(origin.id, relation, items, total=total, partial=True, error=error.tag)
        logger.warning(
            "nearby_matrix_failed",
            origin_id=origin.id,
            relation_type=relation,
            error=error.tag,
            status_code=error.status_code,
            detail=str(error),
        )
        return RecomputeOutcome(status="partial", error=error.tag, **common)

    async def _refresh_isochrones(self, origin: Entity, not_before: Optional[float] = None) -> None:
        # Isochrone failures are recorded on their own payload and never fail the recompute.
        try:
            await self.isochrones.ensure_isochrones(origin, not_before=not_before)
        except Exception as exc:
            logger.error("nearby_isochrones_exception", origin_id=origin.id, error=str(exc), exc_info=True)
