"""Low-battery edge detector.

Fires once when the level crosses down to (or below) the guardian's threshold,
then stays quiet until the level climbs back above it.
"""

import logging
from typing import Optional

from atsight.core.constants import (
    LOW_BATTERY_DEFAULT_THRESHOLD_PCT,
    LOW_BATTERY_MAX_THRESHOLD_PCT,
    LOW_BATTERY_MIN_THRESHOLD_PCT,
)

logger = logging.getLogger(__name__)


def clamp_threshold(threshold: int) -> int:
    return max(LOW_BATTERY_MIN_THRESHOLD_PCT, min(LOW_BATTERY_MAX_THRESHOLD_PCT, int(threshold)))


# Used by: monitor.py (one per child)
class BatteryMonitor:
    def __init__(self, child_id: str, threshold: int = LOW_BATTERY_DEFAULT_THRESHOLD_PCT):
        self.child_id = child_id
        self._threshold = clamp_threshold(threshold)
        self._armed = True
        self._last_level: Optional[int] = None

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def last_level(self) -> Optional[int]:
        return self._last_level

    # Used by: monitor.py (settings refresh)
    def set_threshold(self, threshold: int) -> None:
        new_threshold = clamp_threshold(threshold)
        if new_threshold == self._threshold:
            return
        self._threshold = new_threshold
        if self._last_level is not None and self._last_level > new_threshold:
            self._armed = True
        logger.debug(f"Battery threshold for child {self.child_id} set to {new_threshold}% (armed={self._armed})")

    # Used by: monitor.py (on_battery)
    def update(self, level: int) -> bool:
        """Returns True exactly when this reading is a downward crossing."""
        self._last_level = level
        if level > self._threshold:
            self._armed = True
            return False
        if not self._armed:
            return False
        self._armed = False
        logger.info(f"Battery for child {self.child_id} dropped to {level}% (threshold {self._threshold}%)")
        return True
