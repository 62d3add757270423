"""Normalizes raw watch readings into a per-child signal snapshot.

Implausible or stale readings are dropped here (logged at debug level) so the
detectors never see them; the next reading self-heals.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from atsight.core.constants import (
    HEART_RATE_MAX_BPM,
    HEART_RATE_MAX_FUTURE_SKEW_SECONDS,
    HEART_RATE_MAX_SAMPLE_AGE_SECONDS,
    HEART_RATE_MIN_BPM,
    MOTION_DEVIATION_THRESHOLD_G,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LatLon:
    lat: float
    lon: float


@dataclass(frozen=True)
class LocationFix:
    lat: float
    lon: float
    accuracy: float
    timestamp: datetime

    @property
    def point(self) -> LatLon:
        return LatLon(self.lat, self.lon)


@dataclass(frozen=True)
class HeartRateSample:
    bpm: float
    sample_time: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.sample_time


@dataclass(frozen=True)
class SignalSnapshot:
    child_id: str
    taken_at: datetime
    heart_rate_bpm: Optional[float] = None
    heart_rate_sample_age: Optional[timedelta] = None
    motion_magnitude_deviation: float = 0.0
    last_motion_at: Optional[datetime] = None
    battery_percent: Optional[int] = None
    location: Optional[LatLon] = None


# Used by: off_wrist.py (back-on path), tests
def is_plausible_heart_rate(sample: HeartRateSample, now: datetime) -> bool:
    if not (HEART_RATE_MIN_BPM < sample.bpm < HEART_RATE_MAX_BPM):
        return False
    age = sample.age(now)
    if age < timedelta(0):
        # Small skew between watch and server clocks counts as fresh
        return -age <= timedelta(seconds=HEART_RATE_MAX_FUTURE_SKEW_SECONDS)
    return age < timedelta(seconds=HEART_RATE_MAX_SAMPLE_AGE_SECONDS)


class SignalIngest:
    """Single writer of one child's latest readings."""

    def __init__(self, child_id: str):
        self.child_id = child_id
        self._heart_rate: Optional[HeartRateSample] = None
        self._motion_deviation: float = 0.0
        self._last_motion_at: Optional[datetime] = None
        self._battery_percent: Optional[int] = None
        self._location: Optional[LocationFix] = None

    @property
    def last_motion_at(self) -> Optional[datetime]:
        return self._last_motion_at

    @property
    def location(self) -> Optional[LocationFix]:
        return self._location

    # Used by: monitor.py (on_heart_rate)
    def ingest_heart_rate(self, bpm: float, sample_time: datetime, now: datetime) -> Optional[HeartRateSample]:
        sample = HeartRateSample(bpm=float(bpm), sample_time=sample_time)
        if not is_plausible_heart_rate(sample, now):
            logger.debug(f"Discarding heart rate {bpm} for child {self.child_id} (age {sample.age(now)})")
            return None
        self._heart_rate = sample
        return sample

    # Used by: monitor.py (on_motion)
    def ingest_motion(self, magnitude_g: float, timestamp: datetime) -> bool:
        """Returns True when the reading counts as physical movement."""
        deviation = abs(float(magnitude_g) - 1.0)
        self._motion_deviation = deviation
        if deviation > MOTION_DEVIATION_THRESHOLD_G:
            if self._last_motion_at is None or timestamp > self._last_motion_at:
                self._last_motion_at = timestamp
            return True
        return False

    # Used by: monitor.py (on_battery)
    def ingest_battery(self, percent: int) -> Optional[int]:
        try:
            value = int(percent)
        except (TypeError, ValueError):
            logger.debug(f"Discarding battery reading {percent!r} for child {self.child_id}")
            return None
        if not 0 <= value <= 100:
            logger.debug(f"Discarding battery reading {value} for child {self.child_id}")
            return None
        self._battery_percent = value
        return value

    # Used by: monitor.py (on_location)
    def ingest_location(self, lat: float, lon: float, accuracy: float, timestamp: datetime) -> Optional[LocationFix]:
        if accuracy is None or accuracy <= 0:
            logger.debug(f"Discarding zero-accuracy fix for child {self.child_id}")
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            logger.debug(f"Discarding out-of-range fix ({lat}, {lon}) for child {self.child_id}")
            return None
        if self._location is not None and timestamp < self._location.timestamp:
            logger.debug(f"Discarding out-of-order fix for child {self.child_id}")
            return None
        fix = LocationFix(lat=float(lat), lon=float(lon), accuracy=float(accuracy), timestamp=timestamp)
        self._location = fix
        return fix

    def snapshot(self, now: datetime) -> SignalSnapshot:
        hr = self._heart_rate
        return SignalSnapshot(
            child_id=self.child_id,
            taken_at=now,
            heart_rate_bpm=hr.bpm if hr else None,
            heart_rate_sample_age=hr.age(now) if hr else None,
            motion_magnitude_deviation=self._motion_deviation,
            last_motion_at=self._last_motion_at,
            battery_percent=self._battery_percent,
            location=self._location.point if self._location else None,
        )
