from __future__ import annotations

import pytest

from services import candidate_locator
from services.candidate_locator import CandidateLocator, bounding_box, bounding_boxes, haversine_m
from fixtures import PRAGUE, FakeEntityStore, make_config, make_entity


def test_haversine_one_degree_latitude():
    assert haversine_m(50.0, 14.0, 51.0, 14.0) == pytest.approx(111_195, rel=1e-3)
    assert haversine_m(*PRAGUE, *PRAGUE) == 0.0


def test_bounding_box_contains_the_radius():
    min_lat, min_lng, max_lat, max_lng = bounding_box(PRAGUE[0], PRAGUE[1], 5.0)
    assert haversine_m(PRAGUE[0], PRAGUE[1], max_lat, PRAGUE[1]) > 5000
    assert haversine_m(PRAGUE[0], PRAGUE[1], PRAGUE[0], min_lng) > 5000


def _locator(entities, **overrides):
    return CandidateLocator(FakeEntityStore(entities), make_config(**overrides))


@pytest.mark.asyncio
async def test_candidates_sorted_by_distance_and_truncated():
    entities = [
        make_entity(1, "charging_location"),
        make_entity(12, "poi", PRAGUE[0] + 0.003, PRAGUE[1]),
        make_entity(11, "poi", PRAGUE[0] + 0.001, PRAGUE[1]),
        make_entity(13, "poi", PRAGUE[0] + 0.002, PRAGUE[1]),
        make_entity(14, "rv_spot", PRAGUE[0] + 0.001, PRAGUE[1]),
    ]
    locator = _locator(entities, max_candidates=2)

    found = await locator.candidates_for(entities[0], "poi")

    assert [c.id for c in found] == [11, 13]
    assert found[0].distance_m < found[1].distance_m


@pytest.mark.asyncio
async def test_ties_are_broken_by_id():
    entities = [make_entity(7, "poi", PRAGUE[0] + 0.001, PRAGUE[1]), make_entity(3, "poi", PRAGUE[0] + 0.001, PRAGUE[1])]
    found = await _locator(entities).find_candidates(PRAGUE[0], PRAGUE[1], "poi", 5.0)
    assert [c.id for c in found] == [3, 7]


@pytest.mark.asyncio
async def test_radius_excludes_far_and_coordinate_less_entities():
    entities = [
        make_entity(1, "charging_location"),
        make_entity(2, "poi", 50.1196, 14.4378),
        make_entity(3, "poi", 50.1300, 14.4378),
        make_entity(4, "poi", 0.0, 0.0),
    ]
    found = await _locator(entities).candidates_for(entities[0], "poi")
    assert [c.id for c in found] == [2]


@pytest.mark.asyncio
async def test_origin_is_never_its_own_candidate():
    origin = make_entity(1, "poi")
    found = await _locator([origin]).find_candidates(PRAGUE[0], PRAGUE[1], "poi", 5.0, exclude_id=1)
    assert found == []


@pytest.mark.asyncio
async def test_radius_per_type_pair():
    locator = _locator([], radius_km=2.0, radius_poi_for_charger_km=3.0, radius_charger_for_poi_km=4.0)
    assert locator.radius_for("charging_location", "poi") == 3.0
    assert locator.radius_for("poi", "charging_location") == 4.0
    assert locator.radius_for("rv_spot", "poi") == 2.0


@pytest.mark.asyncio
async def test_has_candidates():
    origin = make_entity(1, "charging_location")
    locator = _locator([origin, make_entity(2, "poi", PRAGUE[0] + 0.001, PRAGUE[1])])
    assert await locator.has_candidates(origin, "poi") is True
    assert await locator.has_candidates(origin, "rv_spot") is False
    assert await locator.has_candidates(make_entity(9, "poi", None, None), "charging_location") is False


@pytest.mark.asyncio
async def test_neighbors_span_every_type():
    entities = [
        make_entity(1, "charging_location"),
        make_entity(2, "poi", PRAGUE[0] + 0.001, PRAGUE[1]),
        make_entity(3, "rv_spot", PRAGUE[0] + 0.002, PRAGUE[1]),
        make_entity(4, "charging_location", PRAGUE[0] + 0.003, PRAGUE[1]),
    ]
    found = await _locator(entities).find_neighbors(PRAGUE[0], PRAGUE[1], 5.0, exclude_id=1)
    assert sorted(c.id for c in found) == [2, 3, 4]


@pytest.mark.asyncio
async def test_candidate_exactly_on_the_radius_is_included(monkeypatch):
    on_edge = make_entity(21, "poi", PRAGUE[0] + 0.010, PRAGUE[1])
    beyond = make_entity(22, "poi", PRAGUE[0] + 0.011, PRAGUE[1])
    distances = {on_edge.lat: 5000.0, beyond.lat: 5000.001}
    monkeypatch.setattr(candidate_locator, "haversine_m", lambda lat1, lng1, lat2, lng2: distances[lat2])

    found = await _locator([on_edge, beyond]).find_candidates(PRAGUE[0], PRAGUE[1], "poi", 5.0)

    assert [c.id for c in found] == [21]
    assert found[0].distance_m == 5000.0


def test_bounding_boxes_split_at_the_antimeridian():
    east = bounding_boxes(-17.0, 179.99, 5.0)
    west = bounding_boxes(-17.0, -179.99, 5.0)

    assert len(east) == 2 and len(west) == 2
    assert east[0][3] == 180.0 and east[1][1] == -180.0
    assert -180.0 < east[1][3] < -179.9
    assert west[0][1] == -180.0 and west[1][3] == 180.0
    assert bounding_boxes(*PRAGUE, 5.0) == [bounding_box(*PRAGUE, 5.0)]


@pytest.mark.asyncio
async def test_candidates_across_the_antimeridian():
    origin = make_entity(1, "charging_location", -17.0, 179.99)
    across = make_entity(2, "poi", -17.0, -179.99)
    far = make_entity(3, "poi", -17.0, -179.5)

    found = await _locator([origin, across, far]).candidates_for(origin, "poi")

    assert [c.id for c in found] == [2]
    assert found[0].distance_m == pytest.approx(2127, rel=0.01)
