# Backend/services/nearby_engine.py
"""
Wiring for the nearby engine: one config, one state store, one quota tracker
and one routing provider shared by every component of the process.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from app.config import NearbyConfig, get_nearby_config
from app.core.logging import get_logger
from services.candidate_locator import CandidateLocator
from services.nearby_batch_service import NearbyBatchProcessor
from services.nearby_entity_store import EntityStore, PostgresEntityStore
from services.nearby_isochrone_service import IsochroneService
from services.nearby_quota_service import QuotaTracker
from services.nearby_recompute_service import NearbyRecomputeService
from services.nearby_scheduler import NearbyScheduler
from services.routing import RoutingProvider, get_routing_provider
from services.state_store import Clock, StateStore, get_state_store

logger = get_logger()


@dataclass
class NearbyEngine:
    config: NearbyConfig
    state: StateStore
    entities: EntityStore
    quota: QuotaTracker
    locator: CandidateLocator
    provider: RoutingProvider
    isochrones: IsochroneService
    scheduler: NearbyScheduler
    recompute: NearbyRecomputeService
    batch: NearbyBatchProcessor
    clock: Clock = time.time

    async def aclose(self) -> None:
        await self.scheduler.aclose()
        await self.provider.aclose()


def build_nearby_engine(
    config: Optional[NearbyConfig] = None,
    *,
    state: Optional[StateStore] = None,
    entities: Optional[EntityStore] = None,
    provider: Optional[RoutingProvider] = None,
    queue=None,
    processed=None,
    clock: Clock = time.time,
    background: bool = True,
) -> NearbyEngine:
    config = config or get_nearby_config()
    state = state or get_state_store(config.state_backend)
    entities = entities or PostgresEntityStore()
    provider = provider or get_routing_provider(config)

    quota = QuotaTracker(state, config, clock=clock)
    locator = CandidateLocator(entities, config)
    scheduler = NearbyScheduler(state, clock=clock, background=background)
    isochrones = IsochroneService(config, entities, quota, provider, clock=clock)
    recompute = NearbyRecomputeService(
        config, state, entities, quota, locator, provider, isochrones, scheduler, clock=clock
    )
    batch_kwargs = {}
    if queue is not None:
        batch_kwargs["queue"] = queue
    if processed is not None:
        batch_kwargs["processed"] = processed
    batch = NearbyBatchProcessor(
        config, quota, recompute, isochrones, entities, scheduler, clock=clock, **batch_kwargs
    )

    engine = NearbyEngine(
        config=config,
        state=state,
        entities=entities,
        quota=quota,
        locator=locator,
        provider=provider,
        isochrones=isochrones,
        scheduler=scheduler,
        recompute=recompute,
        batch=batch,
        clock=clock,
    )

    async def _auto() -> object:
        from app.workers.nearby_auto_processor import run_auto_processor

        return await run_auto_processor(engine)

    scheduler.bind(recompute=recompute.recompute, auto=_auto)
    logger.info(
        "nearby_engine_built",
        provider=provider.name,
        state_backend=type(state).__name__,
        background=background,
    )
    return engine


_engine: Optional[NearbyEngine] = None


def get_nearby_engine() -> NearbyEngine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_nearby_engine()
    return _engine


def set_nearby_engine(engine: Optional[NearbyEngine]) -> None:
    global _engine
    _engine = engine


async def close_nearby_engine() -> None:
    global _engine
    if _engine is None:
        return
    engine, _engine = _engine, None
    await engine.aclose()
