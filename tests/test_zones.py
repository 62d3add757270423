from datetime import timedelta

import pytest

from atsight.services.signal_ingest import LatLon
from atsight.services.zones import (
    Zone,
    ZoneEvaluator,
    ZoneEventKind,
    check_danger_zones,
    check_safe_zone_exit,
    haversine_m,
)

CENTER = LatLon(32.0853, 34.7818)


def _offset_north(point: LatLon, meters: float) -> LatLon:
    # ~111,195 m per degree of latitude on a 6,371 km sphere
    return LatLon(point.lat + meters / 111_195.0, point.lon)


def danger(name="Road", radius=100.0, center=CENTER):
    return Zone(id=name.lower(), center=center, radius_meters=radius, name=name, is_safe=False)


def safe(name="Home", radius=100.0, center=CENTER):
    return Zone(id=name.lower(), center=center, radius_meters=radius, name=name, is_safe=True)


def test_negative_radius_rejected():
    with pytest.raises(ValueError):
        Zone(id="z", center=CENTER, radius_meters=-1, name="bad", is_safe=True)


def test_haversine_matches_known_distance():
    assert haversine_m(CENTER, CENTER) == 0.0
    assert abs(haversine_m(CENTER, _offset_north(CENTER, 500)) - 500) < 1.0


def test_containment_is_inclusive_at_the_border():
    zone = danger(radius=0.0)
    assert zone.contains(CENTER)
    assert not zone.contains(None)


def test_first_entry_alerts_then_cooldown_then_repeat(clock):
    zones = [danger()]
    inside = _offset_north(CENTER, 30)

    events, wm = check_danger_zones(inside, zones, {}, clock.now())
    assert [e.kind for e in events] == [ZoneEventKind.UNSAFE_ZONE_ENTRY]
    assert not events[0].repeat
    assert abs(events[0].depth_m - 70) < 1.0
    assert wm == {"Road": clock.now()}

    events, wm2 = check_danger_zones(inside, zones, wm, clock.now() + timedelta(seconds=119))
    assert events == []
    assert wm2 == wm

    later = clock.now() + timedelta(seconds=120)
    events, wm3 = check_danger_zones(inside, zones, wm, later)
    assert len(events) == 1 and events[0].repeat
    assert wm3["Road"] == later


def test_leaving_clears_watermark_so_reentry_alerts_immediately(clock):
    zones = [danger()]
    inside = _offset_north(CENTER, 10)
    outside = _offset_north(CENTER, 500)

    _, wm = check_danger_zones(inside, zones, {}, clock.now())
    events, wm = check_danger_zones(outside, zones, wm, clock.now() + timedelta(seconds=10))
    assert events == [] and wm == {}

    events, _ = check_danger_zones(inside, zones, wm, clock.now() + timedelta(seconds=20))
    assert len(events) == 1 and not events[0].repeat


def test_overlapping_danger_zones_first_match_wins(clock):
    zones = [danger("A", 200), danger("B", 200)]
    events, wm = check_danger_zones(CENTER, zones, {}, clock.now())
    assert [e.zone.name for e in events] == ["A"]
    assert "B" not in wm


def test_safe_zones_ignored_by_danger_check(clock):
    events, wm = check_danger_zones(CENTER, [safe()], {}, clock.now())
    assert events == [] and wm == {}


def test_safe_exit_is_edge_triggered():
    zones = [safe()]
    inside = _offset_north(CENTER, 50)
    outside = _offset_north(CENTER, 150)

    assert check_safe_zone_exit(None, outside, zones) == []
    assert check_safe_zone_exit(inside, inside, zones) == []

    events = check_safe_zone_exit(inside, outside, zones)
    assert [e.kind for e in events] == [ZoneEventKind.SAFE_ZONE_EXIT]
    assert abs(events[0].distance_outside_m - 50) < 1.0

    assert check_safe_zone_exit(outside, _offset_north(CENTER, 200), zones) == []


def test_safe_exit_reports_only_first_matching_zone():
    zones = [safe("Home", 100), safe("Block", 120)]
    events = check_safe_zone_exit(CENTER, _offset_north(CENTER, 500), zones)
    assert [e.zone.name for e in events] == ["Home"]


def test_evaluator_tracks_previous_location(clock):
    evaluator = ZoneEvaluator("c1")
    zones = [safe(), danger("Pool", 20, center=_offset_north(CENTER, 400))]

    assert evaluator.evaluate(CENTER, zones, clock.now()) == []
    events = evaluator.evaluate(_offset_north(CENTER, 400), zones, clock.advance(30))
    assert {e.kind for e in events} == {ZoneEventKind.UNSAFE_ZONE_ENTRY, ZoneEventKind.SAFE_ZONE_EXIT}
    assert evaluator.previous_location == _offset_north(CENTER, 400)
    assert "Pool" in evaluator.watermark
