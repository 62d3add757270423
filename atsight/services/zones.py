"""Geofence evaluation: danger-zone entry with repeat cooldown, safe-zone exit edges.

Zones are circles (center + radius in metres). Containment uses great-circle
distance, so results are independent of any map zoom level.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from atsight.core.constants import DANGER_ZONE_REPEAT_COOLDOWN_SECONDS, EARTH_RADIUS_METERS
from atsight.services.signal_ingest import LatLon

logger = logging.getLogger(__name__)

ZoneAlertWatermark = Dict[str, datetime]


@dataclass(frozen=True)
class Zone:
    id: str
    center: LatLon
    radius_meters: float
    name: str
    is_safe: bool

    def __post_init__(self):
        if self.radius_meters < 0:
            raise ValueError(f"Zone '{self.name}' has negative radius {self.radius_meters}")

    def distance_to(self, point: LatLon) -> float:
        return haversine_m(self.center, point)

    def contains(self, point: Optional[LatLon]) -> bool:
        if point is None:
            return False
        return self.distance_to(point) <= self.radius_meters


class ZoneEventKind(str, Enum):
    UNSAFE_ZONE_ENTRY = "unsafe_zone_entry"
    SAFE_ZONE_EXIT = "safe_zone_exit"


@dataclass(frozen=True)
class ZoneEvent:
    kind: ZoneEventKind
    zone: Zone
    distance_m: float
    # True when this is a "still in the danger zone" reminder, not the first entry
    repeat: bool = False

    @property
    def depth_m(self) -> float:
        return max(0.0, self.zone.radius_meters - self.distance_m)

    @property
    def distance_outside_m(self) -> float:
        return max(0.0, self.distance_m - self.zone.radius_meters)


def haversine_m(a: LatLon, b: LatLon) -> float:
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlmb = math.radians(b.lon - a.lon)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


# Used by: ZoneEvaluator.evaluate, tests
def check_danger_zones(
    location: LatLon,
    zones: Iterable[Zone],
    watermark: ZoneAlertWatermark,
    now: datetime,
) -> Tuple[List[ZoneEvent], ZoneAlertWatermark]:
    """At most one alert per call; the first qualifying unsafe zone wins.

    Leaving a zone drops its watermark entry so the next entry alerts immediately.
    """
    updated = dict(watermark)
    events: List[ZoneEvent] = []
    cooldown = timedelta(seconds=DANGER_ZONE_REPEAT_COOLDOWN_SECONDS)

    for zone in zones:
        if zone.is_safe:
            continue
        distance = zone.distance_to(location)
        inside = distance <= zone.radius_meters

        if not inside:
            updated.pop(zone.name, None)
            continue
        if events:
            continue

        last_alert = updated.get(zone.name)
        if last_alert is None:
            events.append(ZoneEvent(ZoneEventKind.UNSAFE_ZONE_ENTRY, zone, distance))
            updated[zone.name] = now
        elif now - last_alert >= cooldown:
            events.append(ZoneEvent(ZoneEventKind.UNSAFE_ZONE_ENTRY, zone, distance, repeat=True))
            updated[zone.name] = now

    return events, updated


# Used by: ZoneEvaluator.evaluate, tests
def check_safe_zone_exit(
    previous: Optional[LatLon],
    current: LatLon,
    zones: Iterable[Zone],
) -> List[ZoneEvent]:
    if previous is None:
        return []
    for zone in zones:
        if not zone.is_safe:
            continue
        if zone.contains(previous) and not zone.contains(current):
            return [ZoneEvent(ZoneEventKind.SAFE_ZONE_EXIT, zone, zone.distance_to(current))]
    return []


@dataclass
class ZoneEvaluator:
    """Per-child geofence memory: the danger watermark and the previous fix."""

    child_id: str
    watermark: ZoneAlertWatermark = field(default_factory=dict)
    previous_location: Optional[LatLon] = None

    # Used by: monitor.py (on_location)
    def evaluate(self, location: LatLon, zones: List[Zone], now: datetime) -> List[ZoneEvent]:
        danger, self.watermark = check_danger_zones(location, zones, self.watermark, now)
        exits = check_safe_zone_exit(self.previous_location, location, zones)
        self.previous_location = location
        events = danger + exits
        for event in events:
            logger.info(
                f"Zone event for child {self.child_id}: {event.kind.value} '{event.zone.name}'"
                f"{' (repeat)' if event.repeat else ''}"
            )
        return events
