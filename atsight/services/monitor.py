"""Per-child runtime: owns one child's detector state and serializes every mutation.

A ChildMonitor wires Signal Ingest into the off-wrist detector, the zone
evaluator and the battery edge detector, and sends their outputs to the
alert manager. It also hosts the watch-side HALT alarm and pairing session.

stop() bumps the generation token, so timer callbacks and scheduler jobs
that were already in flight become no-ops instead of touching fresh state.
"""

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from atsight.core.clock import Clock, SystemClock
from atsight.core.constants import DEFAULT_NOTIFICATION_SOUND, OFF_WRIST_EVAL_INTERVAL_SECONDS
from atsight.core.settings import settings
from atsight.services import off_wrist
from atsight.services.alert_events import AlertKind
from atsight.services.alert_service import AlertLifecycleManager, AlertSubscription, get_alert_manager
from atsight.services.backend import BackendUnavailable, EventBackend
from atsight.services.backend_client import HttpEventBackend
from atsight.services.battery import BatteryMonitor
from atsight.services.emergency import HaltAlarm
from atsight.services.event_store import get_event_store
from atsight.services.off_wrist import OffWristAction
from atsight.services.pairing import LinkLivenessChecker, LinkStatus, PairingPoller, PairingSession
from atsight.services.push_service import NotificationSink, get_push_service
from atsight.services.signal_ingest import SignalIngest
from atsight.services.zones import ZoneEvaluator, ZoneEvent, ZoneEventKind

logger = logging.getLogger(__name__)

DEFAULT_CHILD_NAME = "Your child"


class ChildMonitor:
    def __init__(
        self,
        child_id: str,
        backend: EventBackend,
        alert_manager: AlertLifecycleManager,
        sink: NotificationSink,
        clock: Optional[Clock] = None,
        child_name: Optional[str] = None,
    ):
        self.child_id = child_id
        self.child_name = child_name or DEFAULT_CHILD_NAME
        self.backend = backend
        self.alert_manager = alert_manager
        self.sink = sink
        self.clock = clock or SystemClock()

        self.halt = HaltAlarm(child_id, sink)
        self.pairing = PairingSession(child_id)
        self.pairing_poller = PairingPoller(self.pairing, backend, self.clock)
        self.liveness = LinkLivenessChecker(self.pairing, backend)

        self._lock = asyncio.Lock()
        self._generation = 0
        self._running = False
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._prompt_timer: Optional[asyncio.Task] = None
        self._reset_state()

    def _reset_state(self) -> None:
        now = self.clock.now()
        self.ingest = SignalIngest(self.child_id)
        self.off_wrist_state = off_wrist.initial_state(now)
        self.zone_evaluator = ZoneEvaluator(self.child_id)
        self.battery = BatteryMonitor(self.child_id)
        self.halt_subscription = AlertSubscription(
            subscriber_id=f"watch:{self.child_id}",
            backend=self.backend,
            handler=self._on_halt,
            clock=self.clock,
            child_id=self.child_id,
            kinds=[AlertKind.HALT],
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def _job_id(self) -> str:
        return f"off_wrist:{self.child_id}"

    def _is_current(self, generation: Optional[int]) -> bool:
        return self._running and (generation is None or generation == self._generation)

    # ------------------------------------------------------------ lifecycle

    # Used by: MonitorRegistry.start
    async def start(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        async with self._lock:
            if self._running:
                return
            self._generation += 1
            self._reset_state()
            self._running = True
            self._scheduler = scheduler
            generation = self._generation

            if scheduler is not None:
                scheduler.add_job(
                    self.evaluate_off_wrist,
                    trigger=IntervalTrigger(seconds=OFF_WRIST_EVAL_INTERVAL_SECONDS),
                    args=[generation],
                    id=self._job_id,
                    name=f"Off-wrist evaluation for child {self.child_id}",
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )

        await self.refresh_settings()
        logger.info(f"Monitor started for child {self.child_id} (generation {generation})")

    # Used by: MonitorRegistry.stop
    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self._generation += 1

            if self._scheduler is not None and self._scheduler.get_job(self._job_id):
                self._scheduler.remove_job(self._job_id)
            self._scheduler = None
            await self._cancel_prompt_timer()

        await self.halt.shutdown()
        logger.info(f"Monitor stopped for child {self.child_id}")

    async def _cancel_prompt_timer(self) -> None:
        task = self._prompt_timer
        self._prompt_timer = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    # Used by: start(), tasks.py (settings refresh on sensor collection)
    async def refresh_settings(self) -> None:
        try:
            prefs = await self.backend.get_notification_settings(self.child_id)
            name = await self.backend.get_child_name(self.child_id)
        except BackendUnavailable as e:
            logger.warning(f"Could not refresh settings for child {self.child_id}: {e}")
            return
        async with self._lock:
            self.battery.set_threshold(prefs.low_battery_threshold)
            if name:
                self.child_name = name

    # ------------------------------------------------------------ off-wrist

    # Used by: APScheduler off-wrist job, tests
    async def evaluate_off_wrist(self, generation: Optional[int] = None) -> OffWristAction:
        async with self._lock:
            if not self._is_current(generation):
                return OffWristAction.NONE
            now = self.clock.now()
            self.off_wrist_state, action = off_wrist.evaluate(
                self.off_wrist_state, now, self.ingest.last_motion_at, self.child_name
            )
            if action != OffWristAction.PROMPT:
                return action

            delay = (self.off_wrist_state.prompt_deadline - now).total_seconds()
            await self._cancel_prompt_timer()
            self._prompt_timer = asyncio.create_task(self._prompt_timeout(self._generation, delay))

        try:
            await self.sink.present_alert(
                self.child_id,
                "Are you still wearing your watch?",
                "Tap to confirm you are still wearing it.",
                DEFAULT_NOTIFICATION_SOUND,
                {"type": "off_wrist_prompt"},
            )
        except Exception as e:
            logger.error(f"Failed to show off-wrist prompt to child {self.child_id}: {e}")
        return action

    async def _prompt_timeout(self, generation: int, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        await self.expire_prompt(generation)

    # Used by: prompt timer, tests
    async def expire_prompt(self, generation: Optional[int] = None) -> OffWristAction:
        async with self._lock:
            if not self._is_current(generation):
                return OffWristAction.NONE
            now = self.clock.now()
            self.off_wrist_state, action = off_wrist.expire_prompt(self.off_wrist_state, now)
            if action == OffWristAction.WATCH_REMOVED:
                await self.alert_manager.emit_for_child(
                    self.child_id, AlertKind.WATCH_REMOVED, now, child_name=self.child_name
                )
            return action

    # Used by: api/sensor_events.py (POST /watch/{child_id}/still-wearing)
    async def confirm_still_wearing(self) -> bool:
        async with self._lock:
            if not self._running or not self.off_wrist_state.prompt_pending:
                return False
            now = self.clock.now()
            self.off_wrist_state, _ = off_wrist.confirm_still_wearing(self.off_wrist_state, now)
            confirmed = not self.off_wrist_state.prompt_pending
            if confirmed:
                await self._cancel_prompt_timer()
                logger.info(f"Child {self.child_id} confirmed the watch is still on")
            return confirmed

    # --------------------------------------------------------------- ingest

    # Used by: api/sensor_events.py, tasks.py
    async def on_heart_rate(self, bpm: float, sample_time: datetime, generation: Optional[int] = None) -> OffWristAction:
        async with self._lock:
            if not self._is_current(generation):
                return OffWristAction.NONE
            now = self.clock.now()
            sample = self.ingest.ingest_heart_rate(bpm, sample_time, now)
            if sample is None:
                return OffWristAction.NONE
            self.off_wrist_state, action = off_wrist.record_heart_rate(
                self.off_wrist_state, sample, now, self.ingest.last_motion_at
            )
            if action == OffWristAction.WATCH_BACK_ON:
                await self.alert_manager.emit_for_child(
                    self.child_id, AlertKind.WATCH_BACK_ON, now, child_name=self.child_name
                )
            return action

    async def on_motion(self, magnitude_g: float, timestamp: datetime, generation: Optional[int] = None) -> bool:
        async with self._lock:
            if not self._is_current(generation):
                return False
            return self.ingest.ingest_motion(magnitude_g, timestamp)

    async def on_battery(self, percent: int, generation: Optional[int] = None) -> bool:
        """True when a low-battery alert was emitted."""
        async with self._lock:
            if not self._is_current(generation):
                return False
            level = self.ingest.ingest_battery(percent)
            if level is None or not self.battery.update(level):
                return False
            await self.alert_manager.emit_for_child(
                self.child_id,
                AlertKind.BATTERY_LOW,
                self.clock.now(),
                child_name=self.child_name,
                battery_level=level,
                threshold=self.battery.threshold,
            )
            return True

    async def on_location(
        self,
        lat: float,
        lon: float,
        accuracy: float,
        timestamp: datetime,
        generation: Optional[int] = None,
    ) -> List[ZoneEvent]:
        try:
            zones = await self.backend.get_zones(self.child_id)
        except BackendUnavailable as e:
            logger.warning(f"Zones unavailable for child {self.child_id}, skipping evaluation: {e}")
            zones = None

        async with self._lock:
            if not self._is_current(generation):
                return []
            fix = self.ingest.ingest_location(lat, lon, accuracy, timestamp)
            if fix is None or zones is None:
                return []
            now = self.clock.now()
            events = self.zone_evaluator.evaluate(fix.point, zones, now)
            for event in events:
                await self._emit_zone_event(event, now)
            return events

    async def _emit_zone_event(self, event: ZoneEvent, now: datetime) -> None:
        if event.kind == ZoneEventKind.UNSAFE_ZONE_ENTRY:
            await self.alert_manager.emit_for_child(
                self.child_id,
                AlertKind.UNSAFE_ZONE_ENTRY,
                now,
                child_name=self.child_name,
                zone_name=event.zone.name,
                depth_m=event.depth_m,
                repeat=event.repeat,
            )
        else:
            await self.alert_manager.emit_for_child(
                self.child_id,
                AlertKind.SAFE_ZONE_EXIT,
                now,
                child_name=self.child_name,
                zone_name=event.zone.name,
                distance_outside_m=event.distance_outside_m,
            )

    # ----------------------------------------------------------------- HALT

    async def _on_halt(self, alert) -> None:
        await self.halt.trigger(alert)

    # Used by: tasks.py (poll_alert_subscriptions_task)
    async def poll_halt(self, generation: Optional[int] = None) -> int:
        if not self._is_current(generation):
            return 0
        surfaced = await self.halt_subscription.poll()
        return len(surfaced)

    # -------------------------------------------------------------- pairing

    # Used by: api/sensor_events.py (POST /watch/{child_id}/pairing-screen)
    async def open_pairing_screen(self) -> str:
        async with self._lock:
            pin = self.pairing.open_pairing_screen()
        await self.backend.register_pairing_code(pin, self.child_id)
        return pin

    # Used by: tasks.py (poll_pairing_task)
    async def tick_pairing(self, generation: Optional[int] = None) -> Optional[LinkStatus]:
        if not self._is_current(generation):
            return None
        async with self._lock:
            self.pairing.dismiss_if_due(self.clock.now())
            if not self.pairing_poller.is_due():
                return None
            pin = self.pairing.pin

        # The backend call runs unlocked so a slow backend never blocks readings
        response = await self.pairing_poller.fetch(pin)

        async with self._lock:
            if not self._is_current(generation):
                return None
            status = self.pairing_poller.apply(pin, response)
            if status == LinkStatus.LINKED and self.pairing.child_name:
                self.child_name = self.pairing.child_name
            return status

    # Used by: tasks.py (check_links_task)
    async def check_links(self, generation: Optional[int] = None) -> List[str]:
        if not self._is_current(generation):
            return []
        results = await self.liveness.fetch()
        async with self._lock:
            if not self._is_current(generation):
                return []
            had_guardians = bool(self.pairing.guardians)
            removed = self.liveness.apply(results)
            pin = self.pairing.pin if had_guardians and not self.pairing.guardians else None
        if pin is not None:
            # Last guardian gone: the session generated a fresh PIN for re-pairing
            await self.backend.register_pairing_code(pin, self.child_id)
        return removed

    def status(self) -> Dict[str, Any]:
        state = self.off_wrist_state
        return {
            "child_id": self.child_id,
            "child_name": self.child_name,
            "running": self._running,
            "generation": self._generation,
            "is_likely_off_wrist": state.is_likely_off_wrist,
            "prompt_pending": state.prompt_pending,
            "battery_percent": self.ingest.snapshot(self.clock.now()).battery_percent,
            "halt_active": self.halt.is_active,
            "halt_can_dismiss": self.halt.can_dismiss,
            "pairing_status": self.pairing.status.value,
            "pairing_dismissed": self.pairing.screen_dismissed,
            "pairing_pin": self.pairing.pin if self.pairing.is_polling else None,
            "reconnecting": self.pairing.reconnecting,
            "guardians": sorted(self.pairing.guardians),
        }


class MonitorRegistry:
    """child_id -> ChildMonitor. Monitors are created on first start and reused."""

    def __init__(
        self,
        backend: EventBackend,
        alert_manager: AlertLifecycleManager,
        sink: NotificationSink,
        clock: Optional[Clock] = None,
    ):
        self.backend = backend
        self.alert_manager = alert_manager
        self.sink = sink
        self.clock = clock or SystemClock()
        self._monitors: Dict[str, ChildMonitor] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._lock = asyncio.Lock()

    # Used by: scheduler.py (start_scheduler / stop_scheduler)
    def attach_scheduler(self, scheduler: Optional[AsyncIOScheduler]) -> None:
        self._scheduler = scheduler

    # Used by: api/sensor_events.py (POST /watch/{child_id}/start)
    async def start(self, child_id: str, child_name: Optional[str] = None) -> ChildMonitor:
        async with self._lock:
            monitor = self._monitors.get(child_id)
            if monitor is None:
                monitor = ChildMonitor(
                    child_id, self.backend, self.alert_manager, self.sink, self.clock, child_name
                )
                self._monitors[child_id] = monitor
            elif child_name:
                monitor.child_name = child_name
        await monitor.start(self._scheduler)
        return monitor

    # Used by: api/sensor_events.py (POST /watch/{child_id}/stop)
    async def stop(self, child_id: str) -> bool:
        monitor = self._monitors.get(child_id)
        if monitor is None or not monitor.running:
            return False
        await monitor.stop()
        return True

    def get(self, child_id: str) -> Optional[ChildMonitor]:
        return self._monitors.get(child_id)

    # Used by: tasks.py
    def active(self) -> List[ChildMonitor]:
        return [m for m in self._monitors.values() if m.running]

    # Used by: main.py lifespan (shutdown)
    async def stop_all(self) -> None:
        for monitor in list(self._monitors.values()):
            await monitor.stop()


def _default_backend() -> EventBackend:
    if settings.BACKEND_BASE_URL:
        return HttpEventBackend(settings.BACKEND_BASE_URL, settings.BACKEND_TIMEOUT_SECONDS)
    return get_event_store()


_registry: Optional[MonitorRegistry] = None


def get_monitor_registry() -> MonitorRegistry:
    global _registry
    if _registry is None:
        _registry = MonitorRegistry(_default_backend(), get_alert_manager(), get_push_service())
    return _registry
