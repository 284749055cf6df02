# Backend/services/nearby_scheduler.py
"""
Delayed jobs for the nearby engine.

Two kinds of work get scheduled:
- a delayed recompute of one (origin, relation) after the routing API answered 429;
- the next auto-processor run (re-trigger while work remains, or resume at quota reset).

Inside a long-lived process (the API) jobs run as asyncio tasks. Every schedule
is also written to the state store, so a cron-driven worker and the admin view
can see what is pending even when no event loop owns the task.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Optional, Set

from app.core.logging import get_logger
from services.state_store import Clock, StateStore

logger = get_logger()

RecomputeHandler = Callable[[int, str], Awaitable[object]]
AutoHandler = Callable[[], Awaitable[object]]

RECOMPUTE_PREFIX = "nearby:scheduled_recompute:"
AUTO_NEXT_RUN_KEY = "nearby:auto:next_run_at"
SCHEDULE_GRACE_S = 60


class NearbyScheduler:
    def __init__(
        self,
        state: StateStore,
        *,
        clock: Clock = time.time,
        background: bool = True,
    ) -> None:
        self.state = state
        self.clock = clock
        self.background = background
        self._recompute_handler: Optional[RecomputeHandler] = None
        self._auto_handler: Optional[AutoHandler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._auto_task: Optional[asyncio.Task] = None
        self._auto_due_at: Optional[float] = None

    def bind(self, *, recompute: Optional[RecomputeHandler] = None, auto: Optional[AutoHandler] = None) -> None:
        if recompute is not None:
            self._recompute_handler = recompute
        if auto is not None:
            self._auto_handler = auto

    # ------------------------------------------------------------------
    # Delayed recompute
    # ------------------------------------------------------------------
    def _recompute_key(self, origin_id: int, relation_type: str) -> str:
        return f"{RECOMPUTE_PREFIX}{int(origin_id)}:{relation_type}"

    async def schedule_recompute(self, origin_id: int, relation_type: str, delay_s: int) -> bool:
        """At most one pending recompute per (origin, relation). Returns False for a duplicate."""
        delay_s = max(0, int(delay_s))
        key = self._recompute_key(origin_id, relation_type)
        due_at = self.clock() + delay_s
        added = await self.state.add(key, {"due_at": due_at}, ttl_s=delay_s + SCHEDULE_GRACE_S)
        if not added:
            logger.debug("nearby_recompute_already_scheduled", origin_id=origin_id, relation_type=relation_type)
            return False

        logger.info(
            "nearby_recompute_scheduled",
            origin_id=origin_id,
            relation_type=relation_type,
            delay_s=delay_s,
        )
        self._spawn(self._run_recompute(origin_id, relation_type, delay_s))
        return True

    async def _run_recompute(self, origin_id: int, relation_type: str, delay_s: int) -> None:
        await asyncio.sleep(delay_s)
        await self.state.delete(self._recompute_key(origin_id, relation_type))
        if self._recompute_handler is None:
            logger.warning("nearby_recompute_handler_missing", origin_id=origin_id)
            return
        try:
            await self._recompute_handler(origin_id, relation_type)
        except Exception as exc:
            logger.error(
                "nearby_scheduled_recompute_failed",
                origin_id=origin_id,
                relation_type=relation_type,
                error=str(exc),
                exc_info=True,
            )

    async def count_scheduled_recomputes(self) -> int:
        return len(await self.state.keys(RECOMPUTE_PREFIX))

    async def clear_scheduled_recomputes(self) -> int:
        keys = await self.state.keys(RECOMPUTE_PREFIX)
        for key in keys:
            await self.state.delete(key)
        return len(keys)

    # ------------------------------------------------------------------
    # Auto processor runs
    # ------------------------------------------------------------------
    async def schedule_auto_run(self, delay_s: float) -> float:
        """
        Schedule the next auto-processor run. An earlier pending run wins over
        a later one; a sooner request replaces a later pending run.
        """
        delay_s = max(0.0, float(delay_s))
        due_at = self.clock() + delay_s

        if self._auto_task is not None and not self._auto_task.done() and self._auto_due_at is not None:
            if self._auto_due_at <= due_at:
                return self._auto_due_at
            self._auto_task.cancel()

        await self.state.set(AUTO_NEXT_RUN_KEY, due_at, ttl_s=delay_s + SCHEDULE_GRACE_S)
        self._auto_due_at = due_at
        self._auto_task = self._spawn(self._run_auto(delay_s))
        logger.info("nearby_auto_run_scheduled", delay_s=round(delay_s, 1))
        return due_at

    def dispatch_auto_run(self) -> None:
        """Fire-and-forget trigger: start an auto run as soon as the loop is free."""
        if not self.background:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.schedule_auto_run(0))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_auto(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._auto_due_at = None
        await self.state.delete(AUTO_NEXT_RUN_KEY)
        if self._auto_handler is None:
            logger.warning("nearby_auto_handler_missing")
            return
        try:
            await self._auto_handler()
        except Exception as exc:
            logger.error("nearby_scheduled_auto_run_failed", error=str(exc), exc_info=True)

    async def next_auto_run_at(self) -> Optional[float]:
        value = await self.state.get(AUTO_NEXT_RUN_KEY)
        return float(value) if value is not None else None

    # ------------------------------------------------------------------
    def _spawn(self, coro: Awaitable[None]) -> Optional[asyncio.Task]:
        if not self.background:
            # Only the state marker is kept; a cron-driven run picks the work up.
            coro.close()  # type: ignore[attr-defined]
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def aclose(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._auto_task = None
        self._auto_due_at = None
