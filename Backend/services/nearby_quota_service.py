# Backend/services/nearby_quota_service.py
"""
Quota tracking for the routing API.

Two independent gates, both per category ("matrix", "isochrones"):
- a per-minute token bucket that spaces calls out (timing);
- a daily quota snapshot, taken from the provider's response headers or a
  local call counter when headers are missing, that decides whether any call
  should be attempted at all.

Daily budgets are per category unless ``shared_daily_quota`` is set, in which
case every category draws from one "ors" scope.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from app.config import MATRIX_HARD_CAP, NearbyConfig
from app.core.logging import get_logger
from app.models.nearby import QuotaSnapshot, RateDecision
from services.state_store import Clock, StateStore, refill_bucket

logger = get_logger()

BUCKET_TTL_S = 60
REMAINING_TTL_S = 15 * 60
RESET_TTL_S = 60 * 60
STATUS_TTL_S = 24 * 60 * 60
USAGE_TTL_S = 2 * 24 * 60 * 60
MIN_WAIT_S = 3
MAX_WAIT_S = 60
IDLE_RECHECK_S = 60
RETRY_GRACE_S = 30 * 60


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None


class QuotaTracker:
    def __init__(self, state: StateStore, config: NearbyConfig, clock: Clock = time.time) -> None:
        self.state = state
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def scope_for(self, category: str) -> str:
        return "ors" if self.config.shared_daily_quota else category

    def _bucket_key(self, category: str) -> str:
        return f"nearby:bucket:{category}"

    def _quota_key(self, category: str, field: str) -> str:
        return f"nearby:quota:{self.scope_for(category)}:{field}"

    def _usage_key(self, category: str) -> str:
        day = datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime("%Y-%m-%d")
        return f"nearby:usage:{self.scope_for(category)}:{day}"

    def capacity(self, category: str) -> int:
        return max(1, int(self.config.per_minute.get(category, 1)))

    def daily_limit(self, category: str) -> int:
        if self.config.shared_daily_quota:
            return max(self.config.daily_limit.values() or [1])
        return max(1, int(self.config.daily_limit.get(category, 1)))

    # ------------------------------------------------------------------
    # Per-minute token bucket
    # ------------------------------------------------------------------
    async def _load_bucket(self, category: str) -> Dict[str, float]:
        raw = await self.state.get(self._bucket_key(category))
        return refill_bucket(raw, float(self.capacity(category)), self.clock())

    def _wait_for(self, category: str, tokens: float) -> int:
        wait = math.ceil((1.0 - tokens) * 60.0 / self.capacity(category))
        return max(MIN_WAIT_S, min(MAX_WAIT_S, wait))

    async def try_acquire(self, category: str, consume: bool = True) -> RateDecision:
        # Refill and take happen inside the store so every process shares one bucket.
        allowed, tokens = await self.state.take_token(
            self._bucket_key(category),
            float(self.capacity(category)),
            self.clock(),
            consume=consume,
            ttl_s=BUCKET_TTL_S,
        )
        if not allowed:
            wait = self._wait_for(category, tokens)
            logger.info(
                "nearby_bucket_denied",
                category=category,
                tokens=round(tokens, 3),
                wait_seconds=wait,
            )
            return RateDecision(allowed=False, wait_seconds=wait, tokens_remaining=round(tokens, 3))
        return RateDecision(allowed=True, tokens_remaining=round(tokens, 3))

    async def bucket_state(self, category: str) -> Dict[str, Any]:
        bucket = await self._load_bucket(category)
        tokens = bucket["tokens"]
        return {
            "category": category,
            "capacity": self.capacity(category),
            "tokens": round(tokens, 3),
            "wait_seconds": self._wait_for(category, tokens) if tokens < 1.0 else 0,
        }

    # ------------------------------------------------------------------
    # Daily quota snapshot
    # ------------------------------------------------------------------
    async def record_response_headers(self, headers: Mapping[str, str], category: str = "matrix") -> None:
        """Fold rate-limit headers from one upstream response into the snapshot."""
        lowered = {str(k).lower(): v for k, v in dict(headers or {}).items()}
        now = self.clock()

        remaining = _parse_int(lowered.get("x-ratelimit-remaining"))
        if remaining is not None:
            await self.state.set(self._quota_key(category, "remaining"), max(0, remaining), ttl_s=REMAINING_TTL_S)
        else:
            await self.state.delete(self._quota_key(category, "remaining"))

        reset_epoch = _parse_int(lowered.get("x-ratelimit-reset"))
        if reset_epoch is not None and reset_epoch > 0:
            if reset_epoch > 10**12:
                reset_epoch //= 1000
            await self.state.set(self._quota_key(category, "reset_at"), float(reset_epoch), ttl_s=RESET_TTL_S)

        retry_after = _parse_int(lowered.get("retry-after"))
        if retry_after is not None and retry_after > 0:
            await self.state.set(self._quota_key(category, "retry_until"), now + retry_after, ttl_s=retry_after)

        await self.state.set(
            self._quota_key(category, "status"),
            {
                "state": "ok",
                "remaining": remaining,
                "reset_epoch": reset_epoch,
                "source": "headers" if remaining is not None else "fallback",
                "updated_at": now,
            },
            ttl_s=STATUS_TTL_S,
        )
        logger.debug(
            "nearby_quota_headers_recorded",
            category=category,
            remaining=remaining,
            reset_epoch=reset_epoch,
            retry_after=retry_after,
        )

    async def record_call(self, category: str) -> int:
        """Count one upstream call against today's local usage."""
        return await self.state.incr(self._usage_key(category), 1, ttl_s=USAGE_TTL_S)

    async def snapshot(self, category: str = "matrix") -> QuotaSnapshot:
        now = self.clock()
        remaining_raw = await self.state.get(self._quota_key(category, "remaining"))
        reset_at = await self.state.get(self._quota_key(category, "reset_at"))
        retry_until = await self.state.get(self._quota_key(category, "retry_until"))
        status = await self.state.get(self._quota_key(category, "status")) or {}
        used_today = int(await self.state.get(self._usage_key(category)) or 0)
        daily_limit = self.daily_limit(category)

        if remaining_raw is not None:
            remaining = int(remaining_raw)
            source = "headers"
        else:
            remaining = max(0, daily_limit - used_today)
            source = "fallback"

        if retry_until is not None and float(retry_until) <= now:
            retry_until = None

        return QuotaSnapshot(
            scope=self.scope_for(category),
            remaining=remaining,
            reset_at=float(reset_at) if reset_at is not None else None,
            retry_until=float(retry_until) if retry_until is not None else None,
            source=source,
            state=str(status.get("state") or "ok"),
            daily_limit=daily_limit,
            used_today=used_today,
        )

    def _usable(self, snap: QuotaSnapshot) -> int:
        return max(0, int(snap.remaining or 0) - max(0, self.config.quota_buffer))

    async def can_proceed(self, category: str = "matrix") -> bool:
        snap = await self.snapshot(category)
        if snap.retry_until is not None and snap.retry_until > self.clock():
            return False
        return self._usable(snap) > 0

    async def recommended_batch_size(self, requested: Optional[int] = None, category: str = "matrix") -> int:
        snap = await self.snapshot(category)
        size = min(self.config.matrix_batch_size, MATRIX_HARD_CAP, self._usable(snap))
        if requested is not None:
            size = min(size, int(requested))
        return max(1, size)

    async def mark_daily_quota_exhausted(self, category: str, status_code: Optional[int] = None) -> float:
        """Zero the remaining count until shortly after the next UTC midnight."""
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        resume = (now + timedelta(days=1)).replace(hour=0, minute=5, second=0, microsecond=0)
        resume_ts = resume.timestamp()
        ttl = max(60.0, resume_ts - now.timestamp())
        state = "unauthorized" if status_code == 401 else "daily_limit"

        await self.state.set(self._quota_key(category, "remaining"), 0, ttl_s=ttl)
        await self.state.set(self._quota_key(category, "reset_at"), resume_ts, ttl_s=ttl)
        await self.state.set(self._quota_key(category, "retry_until"), resume_ts, ttl_s=ttl)
        await self.state.set(
            self._quota_key(category, "status"),
            {
                "state": state,
                "remaining": 0,
                "reset_epoch": int(resume_ts),
                "source": "headers",
                "status_code": status_code,
                "updated_at": self.clock(),
            },
            ttl_s=max(ttl, STATUS_TTL_S),
        )
        logger.warning(
            "nearby_quota_exhausted",
            category=category,
            scope=self.scope_for(category),
            state=state,
            status_code=status_code,
            resume_at=resume.isoformat(),
        )
        return resume_ts

    async def next_run_at(self, categories: Iterable[str] = ("matrix",)) -> float:
        """Earliest sensible moment to try again, given quota and buckets."""
        now = self.clock()
        categories = tuple(categories)

        quota_ok = True
        retry_until: Optional[float] = None
        reset_at: Optional[float] = None
        for category in categories:
            snap = await self.snapshot(category)
            if snap.retry_until is not None:
                retry_until = max(retry_until or 0.0, snap.retry_until)
            if snap.reset_at is not None:
                reset_at = max(reset_at or 0.0, snap.reset_at)
            if not await self.can_proceed(category):
                quota_ok = False

        if quota_ok:
            waits = []
            for category in categories:
                decision = await self.try_acquire(category, consume=False)
                if not decision.allowed:
                    waits.append(int(decision.wait_seconds or 0))
            if waits:
                return now + max(max(waits), IDLE_RECHECK_S)
            return now + IDLE_RECHECK_S

        if retry_until is not None and retry_until > now:
            return retry_until + RETRY_GRACE_S

        if reset_at is not None and reset_at > now:
            return reset_at

        today = datetime.fromtimestamp(now, tz=timezone.utc)
        midnight = (today + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.timestamp()
