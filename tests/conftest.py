"""Shared fixtures: a controllable clock, an in-memory backend, a recording sink and a sqlite database."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import pytest
import pytest_asyncio

from atsight.core.clock import to_epoch
from atsight.core.database import get_database
from atsight.db.models import GuardianLink, NotificationSettings, PairingStatusResponse
from atsight.services.alert_events import Alert
from atsight.services.alert_service import AlertLifecycleManager, SSEManager
from atsight.services.backend import BackendUnavailable
from atsight.services.zones import Zone

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


class InMemoryBackend:
    """EventBackend fake. Put a method name (or "*") in `failing` to make it raise BackendUnavailable."""

    def __init__(self):
        self.zones: Dict[str, List[Zone]] = {}
        self.settings: Dict[str, NotificationSettings] = {}
        self.guardians: Dict[str, List[GuardianLink]] = {}
        self.child_names: Dict[str, str] = {}
        self.alerts: List[Dict[str, Any]] = []
        self.watermarks: Dict[str, datetime] = {}
        self.registered_pins: Dict[str, str] = {}
        self.pairing_responses: Dict[str, PairingStatusResponse] = {}
        self.links: Set[tuple] = set()
        self.failing: Set[str] = set()
        self.calls: Dict[str, int] = {}

    def _check(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.failing or "*" in self.failing:
            raise BackendUnavailable(f"{name} unavailable")

    def link(self, guardian_id: str, child_id: str, is_admin: bool = False) -> None:
        self.guardians.setdefault(child_id, []).append(
            GuardianLink(guardian_id=guardian_id, child_id=child_id, is_admin=is_admin)
        )
        self.links.add((guardian_id, child_id))

    def add_alert_doc(self, doc: Dict[str, Any]) -> None:
        self.alerts.append(doc)

    async def get_zones(self, child_id: str) -> List[Zone]:
        self._check("get_zones")
        return list(self.zones.get(child_id, []))

    async def get_notification_settings(self, child_id: str) -> NotificationSettings:
        self._check("get_notification_settings")
        return self.settings.get(child_id, NotificationSettings())

    async def get_linked_guardians(self, child_id: str) -> List[GuardianLink]:
        self._check("get_linked_guardians")
        return list(self.guardians.get(child_id, []))

    async def get_child_name(self, child_id: str) -> Optional[str]:
        self._check("get_child_name")
        return self.child_names.get(child_id)

    async def fetch_alerts(
        self,
        since: Optional[datetime] = None,
        guardian_id: Optional[str] = None,
        child_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        self._check("fetch_alerts")
        kinds = set(kinds) if kinds else None
        docs = []
        for doc in self.alerts:
            if since is not None and doc.get("ts", 0) <= to_epoch(since):
                continue
            if guardian_id is not None and doc.get("guardian_id") != guardian_id:
                continue
            if child_id is not None and doc.get("child_id") != child_id:
                continue
            if kinds is not None and doc.get("kind") not in kinds:
                continue
            docs.append(doc)
        return sorted(docs, key=lambda d: d.get("ts", 0))

    async def post_alert(self, alert: Alert) -> bool:
        self._check("post_alert")
        self.alerts.append(alert.to_dict())
        return True

    async def mark_alert_processed(self, alert_id: str, guardian_id: str) -> bool:
        self._check("mark_alert_processed")
        for doc in self.alerts:
            if doc.get("id") == alert_id and doc.get("guardian_id") == guardian_id:
                doc["processed"] = True
                return True
        return False

    async def get_watermark(self, subscriber_id: str) -> Optional[datetime]:
        self._check("get_watermark")
        return self.watermarks.get(subscriber_id)

    async def update_watermark(self, subscriber_id: str, ts: datetime) -> bool:
        self._check("update_watermark")
        current = self.watermarks.get(subscriber_id)
        if current is None or ts > current:
            self.watermarks[subscriber_id] = ts
        return True

    async def register_pairing_code(self, pin: str, child_id: str) -> bool:
        self._check("register_pairing_code")
        self.registered_pins[pin] = child_id
        return True

    async def check_pairing_code(self, pin: str) -> PairingStatusResponse:
        self._check("check_pairing_code")
        return self.pairing_responses.get(pin, PairingStatusResponse(status="not_found"))

    async def request_link(
        self, pin: str, guardian_id: str, guardian_name: str, child_name: Optional[str] = None
    ) -> PairingStatusResponse:
        self._check("request_link")
        child_id = self.registered_pins.get(pin)
        if child_id is None:
            return PairingStatusResponse(status="not_found")
        has_admin = any(link.is_admin for link in self.guardians.get(child_id, []))
        if not has_admin:
            self.link(guardian_id, child_id, is_admin=True)
            if child_name:
                self.child_names[child_id] = child_name
            status = "linked"
        else:
            status = "waiting_for_approval"
        response = PairingStatusResponse(
            status=status,
            guardian_id=guardian_id,
            child_id=child_id,
            child_name=self.child_names.get(child_id),
            parent_name=guardian_name,
        )
        self.pairing_responses[pin] = response
        return response

    async def update_link_status(self, pin: str, admin_guardian_id: str, approve: bool) -> PairingStatusResponse:
        self._check("update_link_status")
        current = self.pairing_responses.get(pin)
        if current is None:
            return PairingStatusResponse(status="not_found")
        admins = [g.guardian_id for g in self.guardians.get(current.child_id, []) if g.is_admin]
        if admin_guardian_id not in admins:
            raise PermissionError(admin_guardian_id)
        if approve:
            self.link(current.guardian_id, current.child_id)
        response = current.model_copy(update={"status": "linked" if approve else "rejected"})
        self.pairing_responses[pin] = response
        return response

    async def check_link(self, guardian_id: str, child_id: str) -> bool:
        self._check("check_link")
        return (guardian_id, child_id) in self.links

    async def remove_link(self, guardian_id: str, child_id: str) -> bool:
        self._check("remove_link")
        if (guardian_id, child_id) not in self.links:
            return False
        self.links.discard((guardian_id, child_id))
        self.guardians[child_id] = [g for g in self.guardians.get(child_id, []) if g.guardian_id != guardian_id]
        return True


class RecordingSink:
    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []
        self.haptics: List[tuple] = []
        self.fail = False

    async def present_alert(self, recipient_id, title, body, sound_id, data=None) -> bool:
        if self.fail:
            raise RuntimeError("sink down")
        self.alerts.append({
            "recipient_id": recipient_id,
            "title": title,
            "body": body,
            "sound": sound_id,
            "data": data,
        })
        return True

    async def trigger_haptic(self, recipient_id, pattern) -> bool:
        self.haptics.append((recipient_id, pattern))
        return True

    def titles_for(self, recipient_id: str) -> List[str]:
        return [a["title"] for a in self.alerts if a["recipient_id"] == recipient_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def manager(backend, sink):
    return AlertLifecycleManager(backend, sink, sse_manager=SSEManager())


@pytest_asyncio.fixture
async def database(tmp_path):
    db = get_database()
    await db.connect(f"sqlite+aiosqlite:///{tmp_path / 'atsight-test.db'}")
    await db.create_tables()
    yield db
    await db.disconnect()
