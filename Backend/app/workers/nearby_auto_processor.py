# Backend/app/workers/nearby_auto_processor.py
"""
Nearby Auto Processor

Bounded, re-triggerable unit of queue work:
- one run at a time (state-store lock, 2 min TTL)
- dead-letter sweep of stuck items
- at most N batch loops
- then: stop on an empty queue, resume at the quota reset, or re-trigger
  while work remains

Runs inside the API through the scheduler, or from cron:
    python -m app.workers.nearby_auto_processor --max-loops 3 --batch-size 1
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import Optional

# Path setup
THIS_FILE = Path(__file__).resolve()
APP_DIR = THIS_FILE.parent.parent
BACKEND_DIR = APP_DIR.parent

if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from app.models.nearby import AutoRunResult
from services.state_store import single_flight

logger = get_logger()
logger = logger.bind(worker="nearby_auto_processor")

RUN_LOCK_KEY = "nearby:auto:lock"
RUN_LOCK_TTL_S = 2 * 60
LAST_RUN_KEY = "nearby:auto:last_run"
LAST_RUN_TTL_S = 7 * 24 * 3600
MAX_RETRIGGER_DELAY_S = 300


async def run_auto_processor(
    engine=None,
    *,
    max_loops: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> AutoRunResult:
    if engine is None:
        from services.nearby_engine import get_nearby_engine

        engine = get_nearby_engine()

    config = engine.config
    queue = engine.batch.queue
    loops_allowed = max(1, int(max_loops or config.auto_max_loops))
    size = max(1, int(batch_size or config.auto_batch_size))

    async with single_flight(engine.state, RUN_LOCK_KEY, RUN_LOCK_TTL_S) as acquired:
        if not acquired:
            logger.info("nearby_auto_run_skipped_locked")
            return AutoRunResult(stopped_reason="already_running")

        result = AutoRunResult(stopped_reason="max_loops")
        delay: Optional[float] = None
        result.swept = await queue.sweep_stuck_items(config.stuck_timeout_minutes)

        for _ in range(loops_allowed):
            batch = await engine.batch.process_batch(size)
            result.loops += 1
            result.processed += batch.processed
            result.errors += batch.errors

            if batch.reason == "empty":
                result.stopped_reason = "empty"
                break

            if batch.rate_limited or batch.reason == "unauthorized":
                # Resume when quota or bucket allow it again, however far away.
                next_run_at = batch.next_run_at or await engine.quota.next_run_at(("matrix",))
                delay = max(0.0, next_run_at - engine.clock())
                result.stopped_reason = batch.reason or "rate_limited"
                result.next_run_in_s = int(delay)
                break

        result.pending_after = await queue.count_pending()

        if result.stopped_reason == "max_loops" and result.pending_after > 0:
            if engine.provider.requires_quota:
                next_run_at = await engine.quota.next_run_at(("matrix",))
                delay = max(0.0, next_run_at - engine.clock())
                if await engine.quota.can_proceed("matrix"):
                    delay = min(float(MAX_RETRIGGER_DELAY_S), delay)
            else:
                delay = 0.0
            result.next_run_in_s = int(delay)

        await engine.state.set(
            LAST_RUN_KEY,
            {**result.model_dump(), "finished_at": engine.clock()},
            ttl_s=LAST_RUN_TTL_S,
        )

    # Scheduled after the run lock is released so the next run can take it.
    if delay is not None and config.auto_enabled:
        await engine.scheduler.schedule_auto_run(delay)

    logger.info(
        "nearby_auto_run_finished",
        loops=result.loops,
        processed=result.processed,
        errors=result.errors,
        swept=result.swept,
        stopped_reason=result.stopped_reason,
        next_run_in_s=result.next_run_in_s,
        pending_after=result.pending_after,
    )
    return result


async def get_last_run(engine) -> Optional[dict]:
    return await engine.state.get(LAST_RUN_KEY)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nearby Auto Processor")
    parser.add_argument("--max-loops", type=int, default=None, help="Batch loops per run")
    parser.add_argument("--batch-size", type=int, default=None, help="Queue items per batch")
    return parser.parse_args(argv)


async def main_async(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    with with_run_id():
        from services.db_service import close_db_pool, init_db_pool
        from services.nearby_engine import build_nearby_engine, set_nearby_engine

        engine = build_nearby_engine(background=False)
        set_nearby_engine(engine)
        await init_db_pool()
        try:
            result = await run_auto_processor(
                engine, max_loops=args.max_loops, batch_size=args.batch_size
            )
        except Exception as exc:
            logger.error("nearby_auto_processor_failed", error=str(exc), exc_info=True)
            return 1
        finally:
            await engine.aclose()
            set_nearby_engine(None)
            await close_db_pool()

        logger.info("nearby_auto_processor_finished", result=result.model_dump())
        return 0


def main() -> None:
    configure_logging(service_name="worker")
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
