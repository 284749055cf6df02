"""
Key/value state with explicit TTLs.

Holds the shared mutable state of the nearby engine: rate buckets, quota
snapshots, single-flight lock markers and scheduler markers. Expiry is part of
every write so a crashed process can never leave a lock or window behind
forever.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from app.core.logging import get_logger
from services.db_service import (
    affected_rows,
    execute,
    execute_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    run_in_transaction,
)

logger = get_logger()

Clock = Callable[[], float]


def refill_bucket(raw: Any, capacity: float, now: float) -> Dict[str, float]:
    """Token bucket ``raw`` refilled at capacity/60 per second up to ``now``."""
    if not isinstance(raw, dict):
        return {"tokens": capacity, "last_refill": now}
    tokens = float(raw.get("tokens", capacity))
    last_refill = float(raw.get("last_refill", now))
    elapsed = max(0.0, now - last_refill)
    tokens = min(capacity, tokens + elapsed * (capacity / 60.0))
    return {"tokens": max(0.0, tokens), "last_refill": now}


class StateStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the live value for ``key`` or None when absent/expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_s: Optional[float] = None) -> bool:
        """Set only when no live value exists. Returns True when this call wrote it."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        ...

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        current = await self.get(key)
        value = int(current or 0) + amount
        await self.set(key, value, ttl_s=ttl_s)
        return value

    @abstractmethod
    async def take_token(
        self,
        key: str,
        capacity: float,
        now: float,
        *,
        consume: bool = True,
        ttl_s: Optional[float] = None,
    ) -> Tuple[bool, float]:
        """
        Refill the bucket at ``key`` and take one token from it as one atomic
        step for every process sharing the store. Returns (allowed, tokens),
        tokens being the level after the take.
        """


class MemoryStateStore(StateStore):
    """In-process store. Used by tests and single-process deployments."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Tuple[bool, Any]:
        entry = self._data.get(key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return False, None
        return True, value

    def _expiry(self, ttl_s: Optional[float]) -> Optional[float]:
        return None if ttl_s is None else self._clock() + max(0.0, float(ttl_s))

    async def get(self, key: str) -> Any:
        return self._live(key)[1]

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        self._data[key] = (value, self._expiry(ttl_s))

    async def add(self, key: str, value: Any, ttl_s: Optional[float] = None) -> bool:
        async with self._lock:
            exists, _ = self._live(key)
            if exists:
                return False
            self._data[key] = (value, self._expiry(ttl_s))
            return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k)[0])

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        async with self._lock:
            exists, current = self._live(key)
            value = int(current or 0) + amount
            expires_at = self._data[key][1] if exists else self._expiry(ttl_s)
            self._data[key] = (value, expires_at)
            return value

    async def take_token(
        self,
        key: str,
        capacity: float,
        now: float,
        *,
        consume: bool = True,
        ttl_s: Optional[float] = None,
    ) -> Tuple[bool, float]:
        # No await between read and write: atomic for every task of this process.
        bucket = refill_bucket(self._live(key)[1], capacity, now)
        if bucket["tokens"] < 1.0:
            return False, bucket["tokens"]
        if consume:
            bucket["tokens"] -= 1.0
            self._data[key] = (bucket, self._expiry(ttl_s))
        return True, bucket["tokens"]


class PostgresStateStore(StateStore):
    """
    State in the ``nearby_state`` table, shared by every API and worker process.
    Expiry is evaluated by the database clock.
    """

    async def get(self, key: str) -> Any:
        row = await fetchrow(
            """
            SELECT value
            FROM nearby_state
            WHERE key = $1
              AND (expires_at IS NULL OR expires_at > NOW())
            """,
            key,
        )
        return row["value"] if row else None

    async def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        await execute(
            """
            INSERT INTO nearby_state (key, value, expires_at)
            VALUES ($1, $2::jsonb, CASE WHEN $3::float8 IS NULL THEN NULL
                                        ELSE NOW() + make_interval(secs => $3::float8) END)
            ON CONFLICT (key) DO UPDATE
               SET value = EXCLUDED.value,
                   expires_at = EXCLUDED.expires_at
            """,
            key,
            value,
            ttl_s,
        )

    async def add(self, key: str, value: Any, ttl_s: Optional[float] = None) -> bool:
        # An expired row counts as absent and is overwritten in the same statement.
        row = await fetchrow(
            """
            INSERT INTO nearby_state (key, value, expires_at)
            VALUES ($1, $2::jsonb, CASE WHEN $3::float8 IS NULL THEN NULL
                                        ELSE NOW() + make_interval(secs => $3::float8) END)
            ON CONFLICT (key) DO UPDATE
               SET value = EXCLUDED.value,
                   expires_at = EXCLUDED.expires_at
             WHERE nearby_state.expires_at IS NOT NULL
               AND nearby_state.expires_at <= NOW()
            RETURNING key
            """,
            key,
            value,
            ttl_s,
        )
        return row is not None

    async def delete(self, key: str) -> None:
        await execute("DELETE FROM nearby_state WHERE key = $1", key)

    async def keys(self, prefix: str) -> List[str]:
        rows = await fetch(
            """
            SELECT key
            FROM nearby_state
            WHERE key LIKE $1 || '%'
              AND (expires_at IS NULL OR expires_at > NOW())
            ORDER BY key
            """,
            prefix,
        )
        return [r["key"] for r in rows]

    async def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        row = await fetchrow(
            """
            INSERT INTO nearby_state (key, value, expires_at)
            VALUES ($1, to_jsonb($2::int), CASE WHEN $3::float8 IS NULL THEN NULL
                                                ELSE NOW() + make_interval(secs => $3::float8) END)
            ON CONFLICT (key) DO UPDATE
               SET value = CASE
                       WHEN nearby_state.expires_at IS NOT NULL AND nearby_state.expires_at <= NOW()
                           THEN EXCLUDED.value
                       ELSE to_jsonb(COALESCE((nearby_state.value)::text::int, 0) + $2::int)
                   END,
                   expires_at = CASE
                       WHEN nearby_state.expires_at IS NOT NULL AND nearby_state.expires_at <= NOW()
                           THEN EXCLUDED.expires_at
                       ELSE nearby_state.expires_at
                   END
            RETURNING value
            """,
            key,
            amount,
            ttl_s,
        )
        return int(row["value"]) if row else amount

    async def take_token(
        self,
        key: str,
        capacity: float,
        now: float,
        *,
        consume: bool = True,
        ttl_s: Optional[float] = None,
    ) -> Tuple[bool, float]:
        # The row lock serialises every API and worker process on this bucket.
        async with run_in_transaction() as conn:
            await execute_with_conn(
                conn,
                """
                INSERT INTO nearby_state (key, value, expires_at)
                VALUES ($1, $2::jsonb, CASE WHEN $3::float8 IS NULL THEN NULL
                                            ELSE NOW() + make_interval(secs => $3::float8) END)
                ON CONFLICT (key) DO NOTHING
                """,
                key,
                {"tokens": capacity, "last_refill": now},
                ttl_s,
            )
            row = await fetchrow_with_conn(
                conn,
                """
                SELECT value,
                       (expires_at IS NOT NULL AND expires_at <= NOW()) AS expired
                FROM nearby_state
                WHERE key = $1
                FOR UPDATE
                """,
                key,
            )
            raw = None if row is None or row["expired"] else row["value"]
            bucket = refill_bucket(raw, capacity, now)
            if bucket["tokens"] < 1.0:
                return False, bucket["tokens"]
            if consume:
                bucket["tokens"] -= 1.0
                await execute_with_conn(
                    conn,
                    """
                    UPDATE nearby_state
                    SET value = $2::jsonb,
                        expires_at = CASE WHEN $3::float8 IS NULL THEN NULL
                                          ELSE NOW() + make_interval(secs => $3::float8) END
                    WHERE key = $1
                    """,
                    key,
                    bucket,
                    ttl_s,
                )
            return True, bucket["tokens"]

    async def purge_expired(self) -> int:
        status = await execute(
            "DELETE FROM nearby_state WHERE expires_at IS NOT NULL AND expires_at <= NOW()"
        )
        return affected_rows(status)


@asynccontextmanager
async def single_flight(store: StateStore, key: str, ttl_s: float) -> AsyncIterator[bool]:
    """
    Yields True for the one caller that owns ``key``; everyone else gets False
    and must return without side effects. The owner always releases on exit;
    the TTL covers a crash in between.
    """
    acquired = await store.add(key, {"acquired_at": time.time()}, ttl_s=ttl_s)
    if not acquired:
        logger.debug("single_flight_busy", key=key)
    try:
        yield acquired
    finally:
        if acquired:
            await store.delete(key)


_state_store: Optional[StateStore] = None


def get_state_store(backend: str = "postgres") -> StateStore:
    """Process-wide store for the configured backend."""
    global _state_store
    if _state_store is None:
        _state_store = MemoryStateStore() if backend == "memory" else PostgresStateStore()
    return _state_store
