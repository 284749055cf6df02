#!/usr/bin/env python3
"""
Nearby queue maintenance from the shell.

Examples:
    python scripts/nearby_queue_cli.py stats
    python scripts/nearby_queue_cli.py enqueue-all --type charging_location
    python scripts/nearby_queue_cli.py process --batch-size 1 --max-loops 3
    python scripts/nearby_queue_cli.py reset-failed
    python scripts/nearby_queue_cli.py cleanup --days 30
    python scripts/nearby_queue_cli.py sweep
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Path setup
THIS_FILE = Path(__file__).resolve()
SCRIPTS_DIR = THIS_FILE.parent
BACKEND_DIR = SCRIPTS_DIR.parent

if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from app.models.nearby import ENTITY_TYPES, normalize_entity_type
from app.workers.nearby_auto_processor import run_auto_processor
from services import nearby_processed_service, nearby_queue_service
from services.db_service import close_db_pool, init_db_pool
from services.nearby_engine import build_nearby_engine, set_nearby_engine

configure_logging(service_name="script")
logger = get_logger()


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Nearby queue maintenance")
    sub = ap.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Run the auto processor once")
    process.add_argument("--batch-size", type=int, default=None)
    process.add_argument("--max-loops", type=int, default=None)

    sub.add_parser("stats", help="Queue, processed and quota overview")

    enqueue_all = sub.add_parser("enqueue-all", help="Queue every published entity")
    enqueue_all.add_argument("--type", dest="entity_type", choices=list(ENTITY_TYPES) + ["charger", "rv"])

    sub.add_parser("reset-failed", help="Failed items back to pending with zero attempts")

    cleanup = sub.add_parser("cleanup", help="Delete completed items older than N days")
    cleanup.add_argument("--days", type=int, default=None)

    sub.add_parser("sweep", help="Recover items stuck in processing")
    return ap.parse_args()


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


async def main_async() -> int:
    args = parse_args()
    with with_run_id():
        engine = build_nearby_engine(background=False)
        set_nearby_engine(engine)
        await init_db_pool()
        try:
            if args.command == "process":
                result = await run_auto_processor(
                    engine, max_loops=args.max_loops, batch_size=args.batch_size
                )
                _print(result.model_dump())
            elif args.command == "stats":
                _print(
                    {
                        "provider": engine.provider.name,
                        "queue": (await nearby_queue_service.get_stats()).model_dump(),
                        "processed": await nearby_processed_service.get_processed_stats(),
                        "quota": {
                            c: (await engine.quota.snapshot(c)).model_dump()
                            for c in ("matrix", "isochrones")
                        },
                        "next_auto_run_at": await engine.scheduler.next_auto_run_at(),
                    }
                )
            elif args.command == "enqueue-all":
                entity_type = normalize_entity_type(args.entity_type) if args.entity_type else None
                _print(await nearby_queue_service.enqueue_all(entity_type, engine=engine))
            elif args.command == "reset-failed":
                _print({"reset": await nearby_queue_service.reset_failed_items()})
            elif args.command == "cleanup":
                days = args.days or engine.config.queue_retention_days
                _print({"removed": await nearby_queue_service.cleanup_old_items(days)})
            elif args.command == "sweep":
                swept = await nearby_queue_service.sweep_stuck_items(engine.config.stuck_timeout_minutes)
                _print({"swept": swept})
        except Exception as e:
            logger.error("nearby_queue_cli_failed", command=args.command, error=str(e), exc_info=True)
            print(f"\n[NearbyQueue] ERROR: {e}")
            return 1
        finally:
            await engine.aclose()
            set_nearby_engine(None)
            await close_db_pool()
    return 0


def main():
    try:
        raise SystemExit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        print("\n[NearbyQueue] Interrupted by user.")


if __name__ == "__main__":
    main()
