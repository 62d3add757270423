"""Alert service: the single emission path for alerts, plus the watermark-deduplicated subscription path."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from atsight.core.clock import Clock, SystemClock
from atsight.core.constants import SOS_SOUND
from atsight.core.utils import ALERT_KIND_TO_SETTING
from atsight.db.models import NotificationSettings
from atsight.services.alert_events import (
    Alert,
    AlertKind,
    AlertValidationError,
    build_payload,
    parse_alert_document,
    render_alert,
)
from atsight.services.backend import BackendUnavailable, EventBackend
from atsight.services.event_store import get_event_store
from atsight.services.push_service import NotificationSink, get_push_service

logger = logging.getLogger(__name__)


class SSEManager:
    def __init__(self):
        self._queues: Dict[str, Set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    # Used by: api/alerts.py (SSE stream endpoint - client connects)
    async def subscribe(self, recipient_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            if recipient_id not in self._queues:
                self._queues[recipient_id] = set()
            self._queues[recipient_id].add(queue)
            logger.info(f"SSE client subscribed for {recipient_id}")
        return queue

    # Used by: api/alerts.py (SSE stream endpoint - client disconnects)
    async def unsubscribe(self, recipient_id: str, queue: asyncio.Queue):
        async with self._lock:
            if recipient_id in self._queues:
                self._queues[recipient_id].discard(queue)
                if not self._queues[recipient_id]:
                    del self._queues[recipient_id]
            logger.info(f"SSE client unsubscribed for {recipient_id}")

    # Used by: AlertLifecycleManager.submit()
    async def broadcast(self, recipient_id: str, alert: Alert):
        async with self._lock:
            queues = self._queues.get(recipient_id, set())
            for queue in queues:
                try:
                    await queue.put(alert)
                except Exception as e:
                    logger.error(f"Failed to broadcast alert to queue: {e}")

    def get_connected_count(self, recipient_id: str) -> int:
        return len(self._queues.get(recipient_id, set()))


_sse_manager: Optional[SSEManager] = None


# Used by: api/alerts.py (SSE stream endpoint), get_alert_manager()
def get_sse_manager() -> SSEManager:
    global _sse_manager
    if _sse_manager is None:
        _sse_manager = SSEManager()
    return _sse_manager


class SuppressionReason(str, Enum):
    DISABLED_BY_SETTINGS = "disabled_by_settings"
    ACKNOWLEDGED = "acknowledged"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EmittedAlert:
    alert: Alert
    persisted: bool = True


@dataclass(frozen=True)
class Suppressed:
    alert: Alert
    reason: SuppressionReason


SubmitResult = Union[EmittedAlert, Suppressed]


class AlertLifecycleManager:
    """Every detector output passes through submit(); one emission at a time."""

    def __init__(self, backend: EventBackend, sink: NotificationSink, sse_manager: Optional[SSEManager] = None):
        self.backend = backend
        self.sink = sink
        self.sse_manager = sse_manager or get_sse_manager()
        self._lock = asyncio.Lock()
        self._last_emitted: Dict[Tuple[str, str, str], datetime] = {}
        # (child_id, guardian_id) pairs whose guardian tapped OK on "watch removed"
        self._acknowledged_removals: Set[Tuple[str, str]] = set()

    async def _settings_for(self, child_id: str) -> NotificationSettings:
        try:
            return await self.backend.get_notification_settings(child_id)
        except BackendUnavailable as e:
            logger.warning(f"Using default notification settings for child {child_id}: {e}")
            return NotificationSettings()

    def _suppression_reason(self, alert: Alert, settings: NotificationSettings) -> Optional[SuppressionReason]:
        setting_name = ALERT_KIND_TO_SETTING.get(alert.kind.value)
        if setting_name and not getattr(settings, setting_name):
            return SuppressionReason.DISABLED_BY_SETTINGS

        if alert.kind == AlertKind.WATCH_REMOVED and (alert.child_id, alert.guardian_id) in self._acknowledged_removals:
            return SuppressionReason.ACKNOWLEDGED

        last = self._last_emitted.get((alert.child_id, alert.guardian_id, alert.kind.value))
        if last is not None and alert.timestamp <= last:
            return SuppressionReason.DUPLICATE
        return None

    # Used by: emit_for_child(), pairing.py (connection requests), tests
    async def submit(self, alert: Alert) -> SubmitResult:
        async with self._lock:
            settings = await self._settings_for(alert.child_id)
            reason = self._suppression_reason(alert, settings)
            if reason is not None:
                logger.debug(
                    f"Suppressed {alert.kind.value} for child {alert.child_id} -> {alert.guardian_id}: {reason.value}"
                )
                return Suppressed(alert=alert, reason=reason)

            if alert.id is None:
                alert = replace(alert, id=uuid.uuid4().hex)

            try:
                persisted = await self.backend.post_alert(alert)
            except BackendUnavailable as e:
                logger.warning(f"Could not persist alert {alert.id}: {e}")
                persisted = False

            self._last_emitted[(alert.child_id, alert.guardian_id, alert.kind.value)] = alert.timestamp
            if alert.kind == AlertKind.WATCH_BACK_ON:
                self._acknowledged_removals.discard((alert.child_id, alert.guardian_id))

            title, body = render_alert(alert)
            sound = SOS_SOUND if alert.kind == AlertKind.SOS else settings.sound
            logger.info(f"Emitting {alert.kind.value} alert {alert.id} to {alert.guardian_id}: {title}")

            await self.sse_manager.broadcast(alert.guardian_id, alert)
            try:
                await self.sink.present_alert(alert.guardian_id, title, body, sound, alert.to_dict())
            except Exception as e:
                logger.error(f"Failed to present alert {alert.id} to {alert.guardian_id}: {e}")

            return EmittedAlert(alert=alert, persisted=persisted)

    # Used by: monitor.py (detector outputs), api/sensor_events.py (SOS button)
    async def emit_for_child(
        self,
        child_id: str,
        kind: AlertKind,
        timestamp: datetime,
        **payload_fields,
    ) -> List[SubmitResult]:
        """Fan one event out to every guardian linked to the child."""
        try:
            guardians = await self.backend.get_linked_guardians(child_id)
        except BackendUnavailable as e:
            logger.warning(f"Cannot resolve guardians for child {child_id}, dropping {kind.value}: {e}")
            return []

        if not guardians:
            logger.debug(f"No linked guardians for child {child_id}, {kind.value} not emitted")
            return []

        payload = build_payload(kind, **payload_fields)
        results = []
        for link in guardians:
            alert = Alert(
                id=None,
                kind=kind,
                child_id=child_id,
                guardian_id=link.guardian_id,
                timestamp=timestamp,
                payload=payload,
            )
            results.append(await self.submit(alert))
        return results

    # Used by: api/alerts.py (acknowledge endpoint)
    async def acknowledge(self, child_id: str, guardian_id: str, alert_id: Optional[str] = None) -> bool:
        """Guardian tapped OK: no more "watch removed" for this child until it is back on."""
        async with self._lock:
            self._acknowledged_removals.add((child_id, guardian_id))
        logger.info(f"Guardian {guardian_id} acknowledged watch removal for child {child_id}")
        if alert_id is None:
            return True
        try:
            return await self.backend.mark_alert_processed(alert_id, guardian_id)
        except BackendUnavailable as e:
            logger.warning(f"Could not mark alert {alert_id} processed: {e}")
            return False

    def is_acknowledged(self, child_id: str, guardian_id: str) -> bool:
        return (child_id, guardian_id) in self._acknowledged_removals


_alert_manager: Optional[AlertLifecycleManager] = None


# Used by: monitor.py, pairing.py, api/*.py
def get_alert_manager() -> AlertLifecycleManager:
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = AlertLifecycleManager(get_event_store(), get_push_service())
    return _alert_manager


class WatermarkPhase(str, Enum):
    BASELINE = "baseline"
    ARMED = "armed"


@dataclass
class AlertWatermark:
    phase: WatermarkPhase = WatermarkPhase.BASELINE
    last_processed: Optional[datetime] = None

    def is_new(self, ts: datetime) -> bool:
        return self.last_processed is None or ts > self.last_processed

    def advance(self, ts: datetime) -> None:
        if self.is_new(ts):
            self.last_processed = ts

    def arm(self, ts: datetime) -> None:
        self.advance(ts)
        self.phase = WatermarkPhase.ARMED

    def reset(self) -> None:
        self.phase = WatermarkPhase.BASELINE


AlertHandler = Callable[[Alert], Awaitable[None]]


class AlertSubscription:
    """Polls the backend for one subscriber and hands each new alert to `handler` exactly once.

    The first poll after construction (or reset) only establishes the baseline:
    alerts that already existed are never surfaced.
    """

    def __init__(
        self,
        subscriber_id: str,
        backend: EventBackend,
        handler: AlertHandler,
        clock: Optional[Clock] = None,
        guardian_id: Optional[str] = None,
        child_id: Optional[str] = None,
        kinds: Optional[Iterable[AlertKind]] = None,
        persist_on_advance: bool = False,
    ):
        self.subscriber_id = subscriber_id
        self.backend = backend
        self.handler = handler
        self.clock = clock or SystemClock()
        self.guardian_id = guardian_id
        self.child_id = child_id
        self.kinds = [k.value for k in kinds] if kinds else None
        self.persist_on_advance = persist_on_advance
        self.watermark = AlertWatermark()
        self._persisted_loaded = False
        self._lock = asyncio.Lock()

    def _parse(self, docs: List[dict]) -> List[Alert]:
        alerts = []
        for doc in docs:
            try:
                alert = parse_alert_document(doc)
            except AlertValidationError as e:
                logger.warning(f"Skipping malformed alert document for {self.subscriber_id}: {e}")
                continue
            if self.kinds and alert.kind.value not in self.kinds:
                continue
            alerts.append(alert)
        return alerts

    # Used by: tasks.py (poll_alert_subscriptions_task), tests
    async def poll(self) -> List[Alert]:
        """Raises BackendUnavailable when the backend cannot be reached."""
        async with self._lock:
            if self.watermark.phase == WatermarkPhase.BASELINE and not self._persisted_loaded:
                persisted = await self.backend.get_watermark(self.subscriber_id)
                if persisted is not None:
                    self.watermark.advance(persisted)
                self._persisted_loaded = True

            docs = await self.backend.fetch_alerts(
                since=self.watermark.last_processed,
                guardian_id=self.guardian_id,
                child_id=self.child_id,
                kinds=self.kinds,
            )
            alerts = self._parse(docs)

            if self.watermark.phase == WatermarkPhase.BASELINE:
                if alerts:
                    baseline = max(a.timestamp for a in alerts)
                else:
                    baseline = self.watermark.last_processed or self.clock.now()
                self.watermark.arm(baseline)
                logger.info(
                    f"Alert subscription {self.subscriber_id} armed at {baseline.isoformat()} "
                    f"({len(alerts)} existing alerts ignored)"
                )
                return []

            newest: Dict[Tuple[str, str], Alert] = {}
            for alert in alerts:
                if not self.watermark.is_new(alert.timestamp):
                    continue
                key = (alert.kind.value, alert.child_id)
                if key not in newest or alert.timestamp > newest[key].timestamp:
                    newest[key] = alert

            surfaced = []
            for alert in sorted(newest.values(), key=lambda a: a.timestamp):
                try:
                    await self.handler(alert)
                except Exception as e:
                    logger.error(f"Alert handler failed for {alert.kind.value} {alert.id}: {e}", exc_info=True)
                self.watermark.advance(alert.timestamp)
                surfaced.append(alert)

            if surfaced and self.persist_on_advance:
                await self.persist()
            return surfaced

    # Used by: emergency.py (SOS dismiss), poll()
    async def persist(self) -> bool:
        if self.watermark.last_processed is None:
            return False
        try:
            return await self.backend.update_watermark(self.subscriber_id, self.watermark.last_processed)
        except BackendUnavailable as e:
            logger.warning(f"Could not persist watermark for {self.subscriber_id}: {e}")
            return False

    def reset(self) -> None:
        """Reconnect: next poll re-baselines from the persisted watermark."""
        self.watermark.reset()
        self._persisted_loaded = False
