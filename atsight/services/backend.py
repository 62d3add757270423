"""Location/event backend contract shared by the SQL store and the HTTP client."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from atsight.db.models import GuardianLink, NotificationSettings, PairingStatusResponse
from atsight.services.alert_events import Alert
from atsight.services.zones import Zone


class BackendUnavailable(Exception):
    """Network or storage failure talking to the backend. Callers retry on their next tick."""


# Used by: alert_service.py, pairing.py, monitor.py, tasks.py (type hints)
class EventBackend(Protocol):
    async def get_zones(self, child_id: str) -> List[Zone]:
        """Zones for a child, in the guardian's configured order."""
        ...

    async def get_notification_settings(self, child_id: str) -> NotificationSettings:
        ...

    async def get_linked_guardians(self, child_id: str) -> List[GuardianLink]:
        ...

    async def get_child_name(self, child_id: str) -> Optional[str]:
        ...

    async def fetch_alerts(
        self,
        since: Optional[datetime] = None,
        guardian_id: Optional[str] = None,
        child_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Raw alert documents strictly newer than `since`, oldest first."""
        ...

    async def post_alert(self, alert: Alert) -> bool:
        ...

    async def mark_alert_processed(self, alert_id: str, guardian_id: str) -> bool:
        ...

    async def get_watermark(self, subscriber_id: str) -> Optional[datetime]:
        ...

    async def update_watermark(self, subscriber_id: str, ts: datetime) -> bool:
        ...

    async def register_pairing_code(self, pin: str, child_id: str) -> bool:
        ...

    async def check_pairing_code(self, pin: str) -> PairingStatusResponse:
        ...

    async def request_link(
        self, pin: str, guardian_id: str, guardian_name: str, child_name: Optional[str] = None
    ) -> PairingStatusResponse:
        ...

    async def update_link_status(self, pin: str, admin_guardian_id: str, approve: bool) -> PairingStatusResponse:
        ...

    async def check_link(self, guardian_id: str, child_id: str) -> bool:
        """False when the link record is gone (the 404 case)."""
        ...

    async def remove_link(self, guardian_id: str, child_id: str) -> bool:
        ...
