"""Off-wrist heuristic: decides "watch likely removed" and "watch back on".

Every function is pure: it takes the previous OffWristState and returns a new
one together with the action the caller must perform. The monitor owns the
state object and serializes calls.

Episode lifecycle:
  worn -> (periodic evaluate) -> PROMPT -> child confirms -> worn
  PROMPT -> prompt expires -> WATCH_REMOVED
  removed -> N consecutive good samples -> WATCH_BACK_ON -> worn
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from atsight.core.constants import (
    BACK_ON_MAX_MOTION_AGE_SECONDS,
    BACK_ON_MAX_SAMPLE_AGE_SECONDS,
    BACK_ON_REQUIRED_SAMPLES,
    OFF_WRIST_ALERT_COOLDOWN_SECONDS,
    OFF_WRIST_FALLBACK_MOTION_SECONDS,
    OFF_WRIST_HR_STALE_SECONDS,
    OFF_WRIST_MOTION_STALE_SECONDS,
    OFF_WRIST_PROMPT_TIMEOUT_SECONDS,
)
from atsight.services.signal_ingest import HeartRateSample, is_plausible_heart_rate

logger = logging.getLogger(__name__)


class OffWristAction(str, Enum):
    NONE = "none"
    PROMPT = "prompt"
    WATCH_REMOVED = "watch_removed"
    WATCH_BACK_ON = "watch_back_on"


@dataclass(frozen=True)
class OffWristState:
    started_at: datetime
    is_likely_off_wrist: bool = False
    back_on_candidate_count: int = 0
    last_alert_at: Optional[datetime] = None
    pending_prompt_child_name: Optional[str] = None
    prompt_deadline: Optional[datetime] = None
    last_heart_rate_at: Optional[datetime] = None
    removal_reported: bool = False

    @property
    def prompt_pending(self) -> bool:
        return self.prompt_deadline is not None


# Used by: monitor.py (start)
def initial_state(now: datetime) -> OffWristState:
    return OffWristState(started_at=now)


def _since(now: datetime, then: Optional[datetime], fallback: datetime) -> timedelta:
    return now - (then if then is not None else fallback)


# Used by: monitor.py (periodic off-wrist job)
def evaluate(
    state: OffWristState,
    now: datetime,
    last_motion_at: Optional[datetime],
    child_name: str,
) -> Tuple[OffWristState, OffWristAction]:
    """Periodic check. Emits PROMPT at most once per off-wrist episode."""
    if state.last_heart_rate_at is None:
        # Nothing to compare against until the sensor has produced one good sample
        return state, OffWristAction.NONE

    if state.is_likely_off_wrist:
        return state, OffWristAction.NONE

    if state.last_alert_at is not None and now - state.last_alert_at < timedelta(seconds=OFF_WRIST_ALERT_COOLDOWN_SECONDS):
        return state, OffWristAction.NONE

    since_hr = now - state.last_heart_rate_at
    since_motion = _since(now, last_motion_at, state.started_at)

    hr_stale = since_hr > timedelta(seconds=OFF_WRIST_HR_STALE_SECONDS)
    strong = hr_stale and since_motion > timedelta(seconds=OFF_WRIST_MOTION_STALE_SECONDS)
    fallback = (
        since_hr < timedelta(seconds=OFF_WRIST_HR_STALE_SECONDS)
        and since_motion > timedelta(seconds=OFF_WRIST_FALLBACK_MOTION_SECONDS)
    )

    if not (strong or fallback):
        return state, OffWristAction.NONE

    logger.info(
        f"Watch likely off-wrist for {child_name} "
        f"({'strong' if strong else 'fallback'}: since_hr={since_hr.total_seconds():.0f}s, "
        f"since_motion={since_motion.total_seconds():.0f}s)"
    )
    new_state = replace(
        state,
        is_likely_off_wrist=True,
        back_on_candidate_count=0,
        last_alert_at=now,
        pending_prompt_child_name=child_name,
        prompt_deadline=now + timedelta(seconds=OFF_WRIST_PROMPT_TIMEOUT_SECONDS),
        removal_reported=False,
    )
    return new_state, OffWristAction.PROMPT


# Used by: monitor.py (prompt response endpoint)
def confirm_still_wearing(state: OffWristState, now: datetime) -> Tuple[OffWristState, OffWristAction]:
    """Child tapped "still here" before the prompt expired: close the episode silently."""
    if not state.prompt_pending or now >= state.prompt_deadline:
        return state, OffWristAction.NONE
    return replace(
        state,
        is_likely_off_wrist=False,
        back_on_candidate_count=0,
        pending_prompt_child_name=None,
        prompt_deadline=None,
    ), OffWristAction.NONE


# Used by: monitor.py (prompt timer)
def expire_prompt(state: OffWristState, now: datetime) -> Tuple[OffWristState, OffWristAction]:
    """No response by the deadline: report the removal, stay off-wrist for back-on."""
    if not state.prompt_pending or now < state.prompt_deadline:
        return state, OffWristAction.NONE
    return replace(
        state,
        pending_prompt_child_name=None,
        prompt_deadline=None,
        removal_reported=True,
    ), OffWristAction.WATCH_REMOVED


# Used by: monitor.py (on_heart_rate)
def record_heart_rate(
    state: OffWristState,
    sample: HeartRateSample,
    now: datetime,
    last_motion_at: Optional[datetime],
) -> Tuple[OffWristState, OffWristAction]:
    if not is_plausible_heart_rate(sample, now):
        return state, OffWristAction.NONE

    if state.last_heart_rate_at is not None and sample.sample_time <= state.last_heart_rate_at:
        # Replayed or out-of-order sample: only new readings count toward back-on
        return state, OffWristAction.NONE
    state = replace(state, last_heart_rate_at=sample.sample_time)

    if not state.is_likely_off_wrist:
        return state, OffWristAction.NONE

    since_motion = _since(now, last_motion_at, state.started_at)
    good = (
        sample.age(now) < timedelta(seconds=BACK_ON_MAX_SAMPLE_AGE_SECONDS)
        and since_motion < timedelta(seconds=BACK_ON_MAX_MOTION_AGE_SECONDS)
    )
    if not good:
        if state.back_on_candidate_count:
            logger.debug(f"Back-on candidate run reset after {state.back_on_candidate_count} samples")
        return replace(state, back_on_candidate_count=0), OffWristAction.NONE

    count = state.back_on_candidate_count + 1
    if count < BACK_ON_REQUIRED_SAMPLES:
        return replace(state, back_on_candidate_count=count), OffWristAction.NONE

    reported = state.removal_reported
    worn = replace(
        state,
        is_likely_off_wrist=False,
        back_on_candidate_count=0,
        pending_prompt_child_name=None,
        prompt_deadline=None,
        removal_reported=False,
    )
    # Guardians never heard about the removal, so there is nothing to retract
    return worn, OffWristAction.WATCH_BACK_ON if reported else OffWristAction.NONE
