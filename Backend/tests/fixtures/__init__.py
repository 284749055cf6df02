# Backend/tests/fixtures/__init__.py
"""
Test fixtures for the nearby engine.

In-memory stand-ins for the collaborators that normally live in Postgres or
behind HTTP:
- FakeClock
- FakeEntityStore (entities + payload blobs, with a write history)
- FakeRoutingProvider (scripted matrix / isochrone responses)
- FakeQueue / FakeProcessed (same call surface as the queue and history modules)

Factories:
- make_config()
- make_entity()
- make_engine()
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from app.config import NearbyConfig
from app.models.nearby import Entity, ProcessedRecord, QueueItem
from services.candidate_locator import haversine_m
from services.nearby_engine import NearbyEngine, build_nearby_engine
from services.nearby_entity_store import BBox, EntityStore
from services.routing import IsochroneResult, MatrixResult, RoutingProvider
from services.routing.base import Point
from services.state_store import MemoryStateStore

# 2024-03-01T10:00:00Z
T0 = 1709287200.0

PRAGUE = (50.0755, 14.4378)


class FakeClock:
    def __init__(self, start: float = T0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


def make_config(**overrides: Any) -> NearbyConfig:
    """Routing mode with a key, generous buckets and no chunk throttle."""
    base: Dict[str, Any] = {
        "provider": "routing",
        "ors_api_key": "test-key",
        "per_minute": {"matrix": 60, "isochrones": 60},
        "daily_limit": {"matrix": 500, "isochrones": 500},
        "chunk_throttle_ms": 0,
        "isochrones_enabled": False,
        "state_backend": "memory",
        "worker_token": "secret-token",
    }
    base.update(overrides)
    return NearbyConfig(**base)


def make_entity(
    entity_id: int,
    entity_type: str = "charging_location",
    lat: Optional[float] = PRAGUE[0],
    lng: Optional[float] = PRAGUE[1],
    title: Optional[str] = None,
) -> Entity:
    return Entity(
        id=entity_id,
        entity_type=entity_type,
        title=title or f"{entity_type} {entity_id}",
        lat=lat,
        lng=lng,
    )


class FakeEntityStore(EntityStore):
    def __init__(self, entities: Sequence[Entity] = ()) -> None:
        self.entities: Dict[int, Entity] = {e.id: e for e in entities}
        self.payloads: Dict[tuple, Dict[str, Any]] = {}
        self.history: List[tuple] = []

    def add(self, entity: Entity) -> Entity:
        self.entities[entity.id] = entity
        return entity

    async def get_entity(self, entity_id: int) -> Optional[Entity]:
        return self.entities.get(int(entity_id))

    async def list_entities(self, entity_type: str, bbox: Optional[BBox] = None) -> List[Entity]:
        found = []
        for entity in self.entities.values():
            if entity.entity_type != entity_type or entity.lat is None or entity.lng is None:
                continue
            if bbox is not None:
                min_lat, min_lng, max_lat, max_lng = bbox
                if not (min_lat <= entity.lat <= max_lat and min_lng <= entity.lng <= max_lng):
                    continue
            found.append(entity)
        return found

    async def list_entity_ids(self, entity_type: str) -> List[int]:
        return sorted(e.id for e in self.entities.values() if e.entity_type == entity_type)

    async def get_payload(self, origin_id: int, key: str) -> Optional[Dict[str, Any]]:
        payload = self.payloads.get((int(origin_id), key))
        return copy.deepcopy(payload) if payload is not None else None

    async def set_payload(self, origin_id: int, key: str, payload: Dict[str, Any]) -> None:
        self.payloads[(int(origin_id), key)] = copy.deepcopy(payload)
        self.history.append((int(origin_id), key, copy.deepcopy(payload)))

    async def delete_payloads(self, origin_id: int, keys: Optional[List[str]] = None) -> int:
        targets = [k for k in self.payloads if k[0] == int(origin_id) and (keys is None or k[1] in keys)]
        for k in targets:
            del self.payloads[k]
        return len(targets)

    def writes_for(self, origin_id: int, key: str) -> List[Dict[str, Any]]:
        return [p for (oid, k, p) in self.history if oid == origin_id and k == key]


MatrixStep = Callable[[Point, Sequence[Point]], MatrixResult]


class FakeRoutingProvider(RoutingProvider):
    """
    Metered provider double. ``matrix_steps`` are consumed one per call: an
    exception instance is raised, a callable is invoked, anything else falls
    back to the default (haversine distance, 600 s per km).
    """

    name = "ors.matrix"
    isochrone_name = "ors.isochrones"
    requires_quota = True

    def __init__(self, matrix_steps: Sequence[Any] = (), isochrone_steps: Sequence[Any] = ()) -> None:
        super().__init__(profile="foot-walking")
        self.matrix_steps = list(matrix_steps)
        self.isochrone_steps = list(isochrone_steps)
        self.matrix_calls: List[Sequence[Point]] = []
        self.isochrone_calls: List[Sequence[int]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    async def matrix(self, origin: Point, destinations: Sequence[Point]) -> MatrixResult:
        self.matrix_calls.append(list(destinations))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        step = self.matrix_steps.pop(0) if self.matrix_steps else None
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(origin, destinations)
        if isinstance(step, MatrixResult):
            return step
        distances = [round(haversine_m(origin[0], origin[1], lat, lng), 1) for lat, lng in destinations]
        return MatrixResult(durations=[round(d * 0.6, 1) for d in distances], distances=distances)

    async def isochrones(self, center: Point, ranges_s: Sequence[int]) -> IsochroneResult:
        self.isochrone_calls.append(list(ranges_s))
        step = self.isochrone_steps.pop(0) if self.isochrone_steps else None
        if isinstance(step, Exception):
            raise step
        if isinstance(step, IsochroneResult):
            return step
        features = [
            {"type": "Feature", "properties": {"value": r}, "geometry": {"type": "Polygon", "coordinates": []}}
            for r in ranges_s
        ]
        return IsochroneResult(geojson={"type": "FeatureCollection", "features": features})

    async def aclose(self) -> None:
        self.closed = True


class FakeQueue:
    """Same call surface as services.nearby_queue_service, kept in a list."""

    def __init__(self) -> None:
        self.items: Dict[int, QueueItem] = {}
        self.calls: List[tuple] = []
        self.swept = 0
        self._next_id = 1

    def add(
        self,
        origin_id: int,
        origin_type: str = "charging_location",
        priority: int = 0,
        created_at: Optional[datetime] = None,
        **fields: Any,
    ) -> QueueItem:
        item = QueueItem(
            id=self._next_id,
            origin_id=origin_id,
            origin_type=origin_type,
            priority=priority,
            created_at=created_at or datetime.fromtimestamp(T0 - 60, tz=timezone.utc),
            **fields,
        )
        self.items[item.id] = item
        self._next_id += 1
        return item

    def _update(self, queue_id: int, **changes: Any) -> QueueItem:
        item = self.items[queue_id].model_copy(update=changes)
        self.items[queue_id] = item
        return item

    async def dequeue_batch(self, limit: int = 1) -> List[QueueItem]:
        self.calls.append(("dequeue_batch", limit))
        pending = [i for i in self.items.values() if i.status == "pending"]
        pending.sort(key=lambda i: (-i.priority, i.created_at, i.id))
        return pending[:limit]

    async def mark_processing(self, queue_id: int) -> bool:
        self.calls.append(("mark_processing", queue_id))
        if self.items[queue_id].status != "pending":
            return False
        self._update(queue_id, status="processing")
        return True

    async def mark_completed(self, queue_id: int) -> None:
        self.calls.append(("mark_completed", queue_id))
        self._update(queue_id, status="completed", error_message=None)

    async def mark_failed(self, queue_id: int, error: Optional[str] = None, *, terminal: bool = False) -> str:
        self.calls.append(("mark_failed", queue_id, error, terminal))
        item = self.items[queue_id]
        attempts = item.attempts + 1
        status = "failed" if terminal or attempts >= item.max_attempts else "pending"
        self._update(queue_id, attempts=attempts, status=status, error_message=error)
        return status

    async def mark_rate_limited(self, queue_id: int, reason: str = "rate_limited") -> None:
        self.calls.append(("mark_rate_limited", queue_id))
        self._update(queue_id, status="pending", error_message=reason)

    async def release(self, queue_id: int) -> None:
        self.calls.append(("release", queue_id))
        self._update(queue_id, status="pending", error_message="busy")

    async def delete_other_active(self, origin_id: int, keep_id: int) -> int:
        doomed = [
            i.id for i in self.items.values()
            if i.origin_id == origin_id and i.id != keep_id and i.status in ("pending", "processing")
        ]
        for queue_id in doomed:
            del self.items[queue_id]
        return len(doomed)

    async def sweep_stuck_items(self, timeout_minutes: int = 15) -> int:
        self.calls.append(("sweep_stuck_items", timeout_minutes))
        return self.swept

    async def count_pending(self) -> int:
        return sum(1 for i in self.items.values() if i.status == "pending")

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeProcessed:
    def __init__(self) -> None:
        self.records: Dict[int, ProcessedRecord] = {}

    async def upsert_processed(self, record: ProcessedRecord) -> None:
        self.records[record.origin_id] = record

    async def delete_processed(self, origin_id: int) -> int:
        return 1 if self.records.pop(origin_id, None) else 0


def make_engine(
    entities: Sequence[Entity] = (),
    *,
    config: Optional[NearbyConfig] = None,
    provider: Optional[RoutingProvider] = None,
    clock: Optional[FakeClock] = None,
    queue: Optional[FakeQueue] = None,
    processed: Optional[FakeProcessed] = None,
) -> NearbyEngine:
    """Fully in-memory engine; scheduled work only leaves a state marker."""
    clock = clock or FakeClock()
    return build_nearby_engine(
        config or make_config(),
        state=MemoryStateStore(clock=clock),
        entities=FakeEntityStore(entities),
        provider=provider or FakeRoutingProvider(),
        queue=queue or FakeQueue(),
        processed=processed or FakeProcessed(),
        clock=clock,
        background=False,
    )
