from __future__ import annotations

import asyncio

import pytest

from app.models.nearby import CachePayload
from services.routing import (
    BasicRoutingProvider,
    MatrixResult,
    RoutingMalformedResponse,
    RoutingRateLimited,
    RoutingUnauthorized,
)
from fixtures import (
    PRAGUE,
    FakeRoutingProvider,
    make_config,
    make_engine,
    make_entity,
)

CHARGER_KEY = "charger_foot"
POI_KEY = "poi_foot"


def _pois_north(count: int, start_id: int = 100, step_deg: float = 0.002):
    """POIs strung out north of the origin, nearest first."""
    return [
        make_entity(start_id + i, "poi", PRAGUE[0] + step_deg * (i + 1), PRAGUE[1])
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_single_candidate_within_radius():
    origin = make_entity(1, "charging_location")
    candidate = make_entity(2, "poi", 50.1196, 14.4378)  # ~4.9 km north
    provider = FakeRoutingProvider(
        matrix_steps=[MatrixResult(durations=[600.0], distances=[800.0])]
    )
    engine = make_engine([origin, candidate], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "completed"
    assert outcome.api_calls == 1
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is False
    assert len(payload["items"]) == 1
    item = payload["items"][0]
    assert item["candidate_id"] == 2
    assert item["duration_s"] == 600.0
    assert item["distance_m"] == 800.0
    assert item["provider"] == "ors.matrix"
    assert payload["progress"] == {"done": 1, "total": 1}


@pytest.mark.asyncio
async def test_candidate_outside_radius_is_ignored():
    origin = make_entity(1, "charging_location")
    far = make_entity(2, "poi", 50.1300, 14.4378)  # ~6 km north
    provider = FakeRoutingProvider()
    engine = make_engine([origin, far], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "completed"
    assert provider.matrix_calls == []


@pytest.mark.asyncio
async def test_zero_candidates_writes_empty_final_payload_without_calls():
    origin = make_entity(1, "charging_location")
    provider = FakeRoutingProvider()
    engine = make_engine([origin], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "completed"
    assert outcome.api_calls == 0
    assert provider.matrix_calls == []
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is False
    assert payload["items"] == []
    assert "error" not in payload
    assert await engine.quota.bucket_state("matrix") == {
        "category": "matrix",
        "capacity": 60,
        "tokens": 60.0,
        "wait_seconds": 0,
    }


@pytest.mark.asyncio
async def test_rate_limited_on_second_of_three_chunks_keeps_first_chunk():
    origin = make_entity(1, "charging_location")
    provider = FakeRoutingProvider(
        matrix_steps=[None, RoutingRateLimited("slow down", status_code=429, retry_after_s=90)]
    )
    engine = make_engine(
        [origin, *_pois_north(6)],
        provider=provider,
        config=make_config(matrix_batch_size=2),
    )

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "rate_limited"
    assert len(provider.matrix_calls) == 2
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is True
    assert payload["error"] == "rate_limited"
    assert payload["retry_after_s"] == 90
    assert payload["progress"] == {"done": 2, "total": 6}
    assert [i["candidate_id"] for i in payload["items"]] == [100, 101]
    assert await engine.scheduler.count_scheduled_recomputes() == 1


@pytest.mark.asyncio
async def test_partial_payloads_grow_monotonically():
    origin = make_entity(1, "charging_location")
    engine = make_engine(
        [origin, *_pois_north(5)],
        config=make_config(matrix_batch_size=2),
    )

    await engine.recompute.recompute(1, "poi")

    writes = engine.entities.writes_for(1, POI_KEY)
    assert len(writes) == 4  # three chunks + final
    seen: set = set()
    done = 0
    for payload in writes:
        ids = {i["candidate_id"] for i in payload["items"]}
        assert seen <= ids
        assert payload["progress"]["done"] >= done
        seen, done = ids, payload["progress"]["done"]
    assert [w["partial"] for w in writes] == [True, True, True, False]


@pytest.mark.asyncio
async def test_final_items_sorted_by_duration_and_survive_a_read_back():
    origin = make_entity(1, "charging_location")
    pois = _pois_north(3)
    provider = FakeRoutingProvider(
        matrix_steps=[MatrixResult(durations=[900.0, 300.0, 600.0], distances=[1000.0, 400.0, 700.0])]
    )
    engine = make_engine([origin, *pois], provider=provider)

    await engine.recompute.recompute(1, "poi")

    raw = await engine.entities.get_payload(1, POI_KEY)
    payload = CachePayload.model_validate(raw)
    assert [i.duration_s for i in payload.items] == [300.0, 600.0, 900.0]
    assert [i.candidate_id for i in payload.items] == [101, 102, 100]
    again = CachePayload.model_validate(payload.model_dump(exclude_none=True))
    assert [i.candidate_id for i in again.items] == [101, 102, 100]


@pytest.mark.asyncio
async def test_bucket_denial_pauses_with_partial_progress():
    origin = make_entity(1, "charging_location")
    engine = make_engine(
        [origin, *_pois_north(4)],
        config=make_config(matrix_batch_size=2, per_minute={"matrix": 1, "isochrones": 1}),
    )

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "rate_limited"
    assert outcome.retry_after_s is not None and 3 <= outcome.retry_after_s <= 60
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is True
    assert payload["progress"]["done"] == 2


@pytest.mark.asyncio
async def test_resume_continues_after_the_saved_prefix():
    origin = make_entity(1, "charging_location")
    clock_engine = make_engine(
        [origin, *_pois_north(4)],
        config=make_config(matrix_batch_size=2, per_minute={"matrix": 1, "isochrones": 1}),
    )
    provider = clock_engine.provider

    first = await clock_engine.recompute.recompute(1, "poi")
    assert first.status == "rate_limited"

    clock_engine.clock.advance(61)
    second = await clock_engine.recompute.recompute(1, "poi")

    assert second.status == "completed"
    assert second.api_calls == 1
    assert [len(c) for c in provider.matrix_calls] == [2, 2]
    payload = await clock_engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is False
    assert {i["candidate_id"] for i in payload["items"]} == {100, 101, 102, 103}


@pytest.mark.asyncio
async def test_concurrent_recompute_is_single_flight():
    origin = make_entity(1, "charging_location")
    provider = FakeRoutingProvider()
    provider.gate = asyncio.Event()
    engine = make_engine([origin, *_pois_north(1)], provider=provider)

    first = asyncio.create_task(engine.recompute.recompute(1, "poi"))
    await provider.entered.wait()
    writes_before = len(engine.entities.history)

    second = await engine.recompute.recompute(1, "poi")

    assert second.status == "locked"
    assert len(engine.entities.history) == writes_before
    provider.gate.set()
    assert (await first).status == "completed"
    assert len(provider.matrix_calls) == 1
    assert not await engine.recompute.is_running(1, "poi")


@pytest.mark.asyncio
async def test_missing_coordinates_is_terminal_error():
    origin = make_entity(1, "charging_location", lat=None, lng=None)
    provider = FakeRoutingProvider()
    engine = make_engine([origin, *_pois_north(1)], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "error"
    assert outcome.error == "missing_coords"
    assert outcome.retryable is False
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["items"] == []
    assert payload["partial"] is False
    assert payload["error"] == "missing_coords"
    assert provider.matrix_calls == []


@pytest.mark.asyncio
async def test_unknown_origin_writes_origin_not_found():
    engine = make_engine([])

    outcome = await engine.recompute.recompute(404, "poi")

    assert outcome.error == "origin_not_found"
    assert outcome.retryable is False
    assert (await engine.entities.get_payload(404, POI_KEY))["error"] == "origin_not_found"


@pytest.mark.asyncio
async def test_unauthorized_sets_long_retry_and_exhausts_quota():
    origin = make_entity(1, "charging_location")
    provider = FakeRoutingProvider(matrix_steps=[RoutingUnauthorized("bad key", status_code=403)])
    engine = make_engine([origin, *_pois_north(1)], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "error"
    assert outcome.error == "unauthorized"
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["error"] == "unauthorized"
    assert payload["retry_after_s"] == 6 * 3600
    assert await engine.quota.can_proceed("matrix") is False


@pytest.mark.asyncio
async def test_malformed_response_keeps_partial_with_error_tag():
    origin = make_entity(1, "charging_location")
    provider = FakeRoutingProvider(matrix_steps=[RoutingMalformedResponse("garbage", status_code=200)])
    engine = make_engine([origin, *_pois_north(1)], provider=provider)

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "partial"
    payload = await engine.entities.get_payload(1, POI_KEY)
    assert payload["partial"] is True
    assert payload["error"] == "invalid_response"


@pytest.mark.asyncio
async def test_relation_for_own_type_is_remapped():
    origin = make_entity(1, "poi")
    charger = make_entity(2, "charging_location", PRAGUE[0] + 0.002, PRAGUE[1])
    engine = make_engine([origin, charger])

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.relation_type == "charging_location"
    payload = await engine.entities.get_payload(1, CHARGER_KEY)
    assert [i["candidate_id"] for i in payload["items"]] == [2]


@pytest.mark.asyncio
async def test_basic_mode_completes_in_one_step_without_quota():
    origin = make_entity(1, "charging_location")
    config = make_config(provider="basic", ors_api_key=None, matrix_batch_size=1)
    engine = make_engine(
        [origin, *_pois_north(3)],
        config=config,
        provider=BasicRoutingProvider(walking_speed_kmh=4.5),
    )

    outcome = await engine.recompute.recompute(1, "poi")

    assert outcome.status == "completed"
    assert outcome.api_calls == 0
    writes = engine.entities.writes_for(1, POI_KEY)
    assert len(writes) == 1
    assert writes[0]["partial"] is False
    assert writes[0]["provider"] == "basic.haversine"
    assert (await engine.quota.snapshot("matrix")).used_today == 0
