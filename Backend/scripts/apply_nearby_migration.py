#!/usr/bin/env python3
"""
Apply the nearby engine schema (Infra/supabase/001_nearby_schema.sql).

Creates nearby_entities, nearby_payloads, nearby_queue, nearby_processed and
nearby_state. Every statement is IF NOT EXISTS, so re-running is safe.
"""

import asyncio
import sys
from pathlib import Path

# Path setup
THIS_FILE = Path(__file__).resolve()
SCRIPTS_DIR = THIS_FILE.parent
BACKEND_DIR = SCRIPTS_DIR.parent
REPO_ROOT = BACKEND_DIR.parent

if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from services.db_service import close_db_pool, execute, fetch, init_db_pool
from app.core.logging import configure_logging, get_logger

configure_logging(service_name="script")
logger = get_logger()

SQL_FILE = REPO_ROOT / "Infra" / "supabase" / "001_nearby_schema.sql"
EXPECTED_TABLES = (
    "nearby_entities",
    "nearby_payloads",
    "nearby_queue",
    "nearby_processed",
    "nearby_state",
)


async def apply_migration() -> int:
    print("\n=== Applying Nearby Schema Migration ===\n")

    if not SQL_FILE.exists():
        print(f"   ✗ SQL file not found: {SQL_FILE}")
        return 1

    print("1. Initializing database connection...")
    await init_db_pool()
    print("   ✓ Database connected\n")

    try:
        sql_content = SQL_FILE.read_text(encoding="utf-8")
        print(f"2. Applying {SQL_FILE.name} ({len(sql_content)} bytes)...")
        try:
            await execute(sql_content)
        except Exception as e:
            print(f"   ✗ Migration failed: {e}")
            logger.exception("nearby_migration_failed", error=str(e))
            return 1
        print("   ✓ Migration applied\n")

        print("3. Verifying tables...")
        rows = await fetch(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ANY($1::text[])
            """,
            list(EXPECTED_TABLES),
        )
        found = {r["table_name"] for r in rows}
        missing = [t for t in EXPECTED_TABLES if t not in found]
        for table in EXPECTED_TABLES:
            mark = "✓" if table in found else "✗"
            print(f"   {mark} {table}")
        if missing:
            logger.error("nearby_migration_tables_missing", missing=missing)
            return 1
    finally:
        await close_db_pool()

    logger.info("nearby_migration_applied", file=SQL_FILE.name)
    print("\n=== Migration Complete ===\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(apply_migration()))
