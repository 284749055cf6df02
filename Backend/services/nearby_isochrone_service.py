# Backend/services/nearby_isochrone_service.py
from __future__ import annotations

import math
import time
from typing import Optional

from app.config import NearbyConfig
from app.core.logging import get_logger
from app.models.nearby import Entity, IsochroneOutcome, IsochronePayload, isochrone_key_for
from app.utils.timeutil import parse_iso_ts, utc_iso
from services.nearby_entity_store import EntityStore
from services.nearby_quota_service import QuotaTracker
from services.routing import (
    RoutingError,
    RoutingMalformedResponse,
    RoutingProvider,
    RoutingRateLimited,
    RoutingTransportError,
    RoutingUnauthorized,
)
from services.state_store import Clock

logger = get_logger()

ORS_TTL_DAYS = 30
FALLBACK_TTL_DAYS = 7
MIN_RANGE_S = 60
CENTER_TOLERANCE_DEG = 1e-6

# error → retry-after seconds written into the payload
RETRY_UNAUTHORIZED_S = 3600
RETRY_RATE_LIMITED_S = 60
RETRY_HTTP_S = 120
RETRY_NETWORK_S = 30


class IsochroneService:
    """
    Keeps the per-origin isochrone payload current. Failures never touch the
    nearby cache payloads; they only annotate the isochrone payload.
    """

    def __init__(
        self,
        config: NearbyConfig,
        entities: EntityStore,
        quota: QuotaTracker,
        provider: RoutingProvider,
        clock: Clock = time.time,
    ) -> None:
        self.config = config
        self.entities = entities
        self.quota = quota
        self.provider = provider
        self.clock = clock

    @property
    def payload_key(self) -> str:
        return isochrone_key_for(self.config.profile)

    @property
    def metered(self) -> bool:
        return bool(self.provider.isochrone_requires_quota)

    def ranges_s(self) -> list[int]:
        return [max(MIN_RANGE_S, int(m) * 60) for m in self.config.isochrone_minutes]

    def is_fresh(
        self,
        payload: Optional[dict],
        origin: Optional[Entity] = None,
        not_before: Optional[float] = None,
    ) -> bool:
        """
        A payload is fresh while it is error-free, within its TTL, centred on
        the origin's current coordinates and computed no earlier than
        ``not_before`` (the moment the origin last changed).
        """
        if not payload:
            return False
        try:
            iso = IsochronePayload.model_validate(payload)
        except ValueError:
            return False
        if iso.error or iso.feature_count == 0:
            return False
        computed = parse_iso_ts(iso.computed_at)
        if computed is None:
            return False
        if not_before is not None and computed < not_before:
            return False
        if origin is not None and origin.has_coords and not self._centred_on(iso, origin):
            return False
        return (self.clock() - computed) < iso.ttl_days * 86400

    @staticmethod
    def _centred_on(iso: IsochronePayload, origin: Entity) -> bool:
        if not iso.center or len(iso.center) != 2:
            return False
        lng, lat = iso.center
        return (
            abs(float(lng) - float(origin.lng)) <= CENTER_TOLERANCE_DEG
            and abs(float(lat) - float(origin.lat)) <= CENTER_TOLERANCE_DEG
        )

    async def is_stale(self, origin_id: int, not_before: Optional[float] = None) -> bool:
        if not self.config.isochrones_enabled:
            return False
        origin = await self.entities.get_entity(origin_id)
        payload = await self.entities.get_payload(origin_id, self.payload_key)
        return not self.is_fresh(payload, origin, not_before)

    async def ensure_isochrones(
        self,
        origin: Entity,
        *,
        force: bool = False,
        not_before: Optional[float] = None,
    ) -> IsochroneOutcome:
        if not self.config.isochrones_enabled:
            return IsochroneOutcome(status="disabled")
        if not origin.has_coords:
            return IsochroneOutcome(status="error", error="missing_coords")

        cached = await self.entities.get_payload(origin.id, self.payload_key)
        if not force and self.is_fresh(cached, origin, not_before):
            return IsochroneOutcome(status="cached", features=IsochronePayload.model_validate(cached).feature_count)

        ranges = self.ranges_s()
        center = (float(origin.lat), float(origin.lng))

        if self.metered:
            if not await self.quota.can_proceed("isochrones"):
                tag, retry = await self._quota_block()
                await self._write_error(origin, cached, ranges, tag, retry)
                logger.info("nearby_isochrones_quota_blocked", origin_id=origin.id, error=tag, retry_after_s=retry)
                return IsochroneOutcome(status="error", error=tag)
            decision = await self.quota.try_acquire("isochrones")
            if not decision.allowed:
                await self._write_error(origin, cached, ranges, "rate_limited", int(decision.wait_seconds or RETRY_RATE_LIMITED_S))
                return IsochroneOutcome(status="error", error="rate_limited")

        api_calls = 1 if self.metered else 0
        try:
            result = await self.provider.isochrones(center, ranges)
        except RoutingError as e:
            if self.metered:
                await self.quota.record_call("isochrones")
                if e.headers:
                    await self.quota.record_response_headers(e.headers, category="isochrones")
                if isinstance(e, RoutingUnauthorized):
                    await self.quota.mark_daily_quota_exhausted("isochrones", e.status_code)
            tag, retry = self._classify(e)
            await self._write_error(origin, cached, ranges, tag, retry)
            logger.warning(
                "nearby_isochrones_failed",
                origin_id=origin.id,
                error=tag,
                status_code=e.status_code,
                retry_after_s=retry,
            )
            return IsochroneOutcome(status="error", error=tag, api_calls=api_calls)

        if self.metered:
            await self.quota.record_call("isochrones")
            await self.quota.record_response_headers(result.headers, category="isochrones")

        payload = IsochronePayload(
            profile=self.config.profile,
            ranges_s=ranges,
            center=[center[1], center[0]],
            geojson=result.geojson,
            computed_at=utc_iso(self.clock()),
            ttl_days=ORS_TTL_DAYS if self.metered else FALLBACK_TTL_DAYS,
            provider=self.provider.isochrone_name,
        )
        await self.entities.set_payload(origin.id, self.payload_key, payload.model_dump(exclude_none=True))
        logger.info(
            "nearby_isochrones_written",
            origin_id=origin.id,
            provider=payload.provider,
            features=payload.feature_count,
        )
        return IsochroneOutcome(status="computed", api_calls=api_calls, features=payload.feature_count)

    async def _quota_block(self) -> tuple[str, int]:
        """Error tag and retry delay while the isochrone quota forbids calls."""
        snap = await self.quota.snapshot("isochrones")
        resume = await self.quota.next_run_at(("isochrones",))
        retry = max(1, math.ceil(resume - self.clock()))
        if snap.state == "unauthorized":
            return "unauthorized", retry
        if snap.retry_until is not None and snap.remaining > self.config.quota_buffer:
            return "rate_limited", retry
        return "daily_limit", retry

    def _classify(self, error: RoutingError) -> tuple[str, int]:
        if isinstance(error, RoutingUnauthorized):
            return "unauthorized", RETRY_UNAUTHORIZED_S
        if isinstance(error, RoutingRateLimited):
            return "rate_limited", int(error.retry_after_s or RETRY_RATE_LIMITED_S)
        if isinstance(error, RoutingTransportError):
            return "network_error", RETRY_NETWORK_S
        if isinstance(error, RoutingMalformedResponse):
            return "invalid_response", RETRY_HTTP_S
        return error.tag, RETRY_HTTP_S

    async def _write_error(
        self,
        origin: Entity,
        cached: Optional[dict],
        ranges: list[int],
        tag: str,
        retry_after_s: int,
    ) -> None:
        # Keep the last good geojson readable; only annotate the failure.
        base = dict(cached or {})
        base.setdefault("version", 1)
        base.setdefault("profile", self.config.profile)
        base.setdefault("ranges_s", ranges)
        base.setdefault("center", [float(origin.lng), float(origin.lat)])
        base.setdefault("ttl_days", ORS_TTL_DAYS if self.metered else FALLBACK_TTL_DAYS)
        base["error"] = tag
        base["error_at"] = utc_iso(self.clock())
        base["retry_after_s"] = int(retry_after_s)
        await self.entities.set_payload(origin.id, self.payload_key, base)
