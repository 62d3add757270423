"""SOS and HALT escalation: repeating haptic loops with explicit dismissal rules.

SOS (guardian side) buzzes every second until the guardian dismisses it.
HALT (watch side) buzzes a failure pattern during a grace window in which it
cannot be dismissed, then plays a success pattern and becomes dismissible.
"""

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import Dict, List, Optional

from atsight.core.clock import Clock, SystemClock
from atsight.core.constants import HALT_GRACE_SECONDS, HALT_HAPTIC_INTERVAL_SECONDS, SOS_HAPTIC_INTERVAL_SECONDS
from atsight.services.alert_events import Alert, AlertKind, build_payload
from atsight.services.alert_service import AlertSubscription
from atsight.services.backend import EventBackend
from atsight.services.event_store import get_event_store
from atsight.services.push_service import NotificationSink, get_push_service

logger = logging.getLogger(__name__)


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


class SosAlarm:
    def __init__(
        self,
        recipient_id: str,
        sink: NotificationSink,
        subscription: Optional[AlertSubscription] = None,
        interval: float = SOS_HAPTIC_INTERVAL_SECONDS,
    ):
        self.recipient_id = recipient_id
        self.sink = sink
        self.subscription = subscription
        self.interval = interval
        self.current: Optional[Alert] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _haptic(self) -> None:
        try:
            await self.sink.trigger_haptic(self.recipient_id, "error")
        except Exception as e:
            logger.error(f"SOS haptic failed for {self.recipient_id}: {e}")

    async def _repeat(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self._haptic()

    # Used by: EmergencyRegistry (SOS subscription handler), tests
    async def trigger(self, alert: Alert) -> None:
        """A second SOS while ringing only replaces the alert on screen."""
        self.current = alert
        if self.is_active:
            return
        logger.warning(f"SOS from child {alert.child_id} surfaced to {self.recipient_id}")
        await self._haptic()
        self._loop_task = asyncio.create_task(self._repeat())

    # Used by: api/alerts.py (POST /alerts/sos/dismiss)
    async def dismiss(self) -> bool:
        if not self.is_active:
            return False
        await _cancel(self._loop_task)
        self._loop_task = None
        self.current = None
        if self.subscription is not None:
            await self.subscription.persist()
        logger.info(f"SOS dismissed by {self.recipient_id}")
        return True

    async def stop(self) -> None:
        """Silences the loop without treating it as a dismissal."""
        await _cancel(self._loop_task)
        self._loop_task = None


class HaltAlarm:
    def __init__(
        self,
        child_id: str,
        sink: NotificationSink,
        grace_seconds: float = HALT_GRACE_SECONDS,
        interval: float = HALT_HAPTIC_INTERVAL_SECONDS,
    ):
        self.child_id = child_id
        self.sink = sink
        self.grace_seconds = grace_seconds
        self.interval = interval
        self.is_active = False
        self.can_dismiss = False
        self.current: Optional[Alert] = None
        self._pulse_task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None

    async def _haptic(self, pattern: str) -> None:
        try:
            await self.sink.trigger_haptic(self.child_id, pattern)
        except Exception as e:
            logger.error(f"HALT haptic failed for child {self.child_id}: {e}")

    async def _pulse(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self._haptic("failure")

    async def _grace(self) -> None:
        await asyncio.sleep(self.grace_seconds)
        await _cancel(self._pulse_task)
        self.can_dismiss = True
        await self._haptic("success")
        logger.info(f"HALT on child {self.child_id} is now dismissible")

    async def _clear_timers(self) -> None:
        # The grace task may be the caller when it has just finished
        current = asyncio.current_task()
        for task in (self._pulse_task, self._grace_task):
            if task is not current:
                await _cancel(task)
        self._pulse_task = None
        self._grace_task = None

    # Used by: monitor.py (HALT subscription handler), tests
    async def trigger(self, alert: Optional[Alert] = None) -> None:
        """Every HALT restarts the full sequence."""
        await self._clear_timers()
        self.current = alert
        self.is_active = True
        self.can_dismiss = False
        logger.warning(f"HALT received on child {self.child_id}")
        await self._haptic("failure")
        self._pulse_task = asyncio.create_task(self._pulse())
        self._grace_task = asyncio.create_task(self._grace())

    # Used by: api/sensor_events.py (POST /watch/{child_id}/halt/dismiss)
    async def dismiss(self) -> bool:
        if not self.is_active:
            return False
        if not self.can_dismiss:
            logger.info(f"HALT dismiss refused for child {self.child_id}: grace window still open")
            return False
        await self._clear_timers()
        self.is_active = False
        self.can_dismiss = False
        self.current = None
        return True

    async def shutdown(self) -> None:
        await self._clear_timers()
        self.is_active = False
        self.can_dismiss = False


# Used by: api/alerts.py (POST /alerts/halt)
async def send_halt(
    backend: EventBackend,
    guardian_id: str,
    child_id: str,
    child_name: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> Optional[Alert]:
    """Records a HALT for the child's watch to pick up on its next poll."""
    clock = clock or SystemClock()
    payload = {"child_name": child_name} if child_name else {}
    alert = Alert(
        id=uuid.uuid4().hex,
        kind=AlertKind.HALT,
        child_id=child_id,
        guardian_id=guardian_id,
        timestamp=clock.now(),
        payload=build_payload(AlertKind.HALT, **payload),
    )
    if not await backend.post_alert(alert):
        logger.error(f"Failed to send HALT from {guardian_id} to child {child_id}")
        return None
    logger.info(f"HALT sent from {guardian_id} to child {child_id}")
    return alert


class EmergencyRegistry:
    """Guardian-side SOS alarms, one subscription + alarm per watching guardian."""

    def __init__(self, backend: EventBackend, sink: NotificationSink, clock: Optional[Clock] = None):
        self.backend = backend
        self.sink = sink
        self.clock = clock or SystemClock()
        self._alarms: Dict[str, SosAlarm] = {}
        self._lock = asyncio.Lock()

    # Used by: api/alerts.py (SSE stream connect)
    async def watch_guardian(self, guardian_id: str) -> SosAlarm:
        async with self._lock:
            alarm = self._alarms.get(guardian_id)
            if alarm is None:
                alarm = SosAlarm(guardian_id, self.sink)
                alarm.subscription = AlertSubscription(
                    subscriber_id=guardian_id,
                    backend=self.backend,
                    handler=alarm.trigger,
                    clock=self.clock,
                    guardian_id=guardian_id,
                    kinds=[AlertKind.SOS],
                )
                self._alarms[guardian_id] = alarm
                logger.info(f"Watching SOS alerts for guardian {guardian_id}")
            return alarm

    def get_alarm(self, guardian_id: str) -> Optional[SosAlarm]:
        return self._alarms.get(guardian_id)

    # Used by: tasks.py (poll_alert_subscriptions_task)
    def subscriptions(self) -> List[AlertSubscription]:
        return [alarm.subscription for alarm in self._alarms.values() if alarm.subscription is not None]

    # Used by: main.py lifespan (shutdown)
    async def shutdown(self) -> None:
        async with self._lock:
            for alarm in self._alarms.values():
                await alarm.stop()
            self._alarms.clear()


_emergency_registry: Optional[EmergencyRegistry] = None


def get_emergency_registry() -> EmergencyRegistry:
    global _emergency_registry
    if _emergency_registry is None:
        _emergency_registry = EmergencyRegistry(get_event_store(), get_push_service())
    return _emergency_registry
