"""Guardian-to-child pairing.

Watch side: PairingSession (PIN + local link state), PairingPoller (3s status
polls with backoff) and LinkLivenessChecker (drops guardians whose link record
disappeared). Guardian side: PairingService (PIN submission, admin decisions).
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from atsight.core.clock import Clock, SystemClock
from atsight.core.constants import (
    PAIRING_PIN_LENGTH,
    PAIRING_POLL_INTERVAL_SECONDS,
    PAIRING_REJECTED_DISMISS_SECONDS,
    RECONNECTING_FAILURE_THRESHOLD,
)
from atsight.db.models import PairingStatusResponse
from atsight.services.alert_events import Alert, AlertKind, build_payload
from atsight.services.alert_service import AlertLifecycleManager, get_alert_manager
from atsight.services.backend import BackendUnavailable, EventBackend
from atsight.services.event_store import get_event_store
from atsight.services.retry import ExponentialBackoff

logger = logging.getLogger(__name__)


class InvalidPinError(ValueError):
    pass


class LinkStatus(str, Enum):
    NONE = "none"
    PENDING_APPROVAL = "pending_approval"
    LINKED = "linked"
    REJECTED = "rejected"


@dataclass
class LinkState:
    guardian_id: str
    child_id: str
    status: LinkStatus
    pin: str
    is_admin: bool = False
    guardian_name: Optional[str] = None


def generate_pin(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return f"{rng.randrange(10 ** PAIRING_PIN_LENGTH):0{PAIRING_PIN_LENGTH}d}"


class PairingSession:
    """Watch-side pairing state for one child."""

    def __init__(self, child_id: str, rng: Optional[random.Random] = None):
        self.child_id = child_id
        self._rng = rng
        self.pin = generate_pin(rng)
        self.status = LinkStatus.NONE
        self.guardians: Dict[str, LinkState] = {}
        self.child_name: Optional[str] = None
        self.dismiss_at: Optional[datetime] = None
        self.screen_dismissed = False
        self.consecutive_failures = 0

    @property
    def reconnecting(self) -> bool:
        return self.consecutive_failures >= RECONNECTING_FAILURE_THRESHOLD

    @property
    def is_polling(self) -> bool:
        return self.status in (LinkStatus.NONE, LinkStatus.PENDING_APPROVAL)

    @property
    def admin_id(self) -> Optional[str]:
        return next((g.guardian_id for g in self.guardians.values() if g.is_admin), None)

    # Used by: monitor.py (open pairing screen), api/sensor_events.py
    def open_pairing_screen(self) -> str:
        """Entering the pairing screen always shows a fresh PIN."""
        self.pin = generate_pin(self._rng)
        self.status = LinkStatus.NONE
        self.dismiss_at = None
        self.screen_dismissed = False
        return self.pin

    # Used by: PairingPoller.poll_once
    def apply_status(self, response: PairingStatusResponse, now: datetime) -> LinkStatus:
        if self.status == LinkStatus.REJECTED:
            # Terminal for this PIN; only a fresh PIN starts over
            return self.status

        if response.status == "waiting_for_approval":
            self.status = LinkStatus.PENDING_APPROVAL
        elif response.status == "rejected":
            self.status = LinkStatus.REJECTED
            self.dismiss_at = now + timedelta(seconds=PAIRING_REJECTED_DISMISS_SECONDS)
            logger.info(f"Pairing request for child {self.child_id} was rejected")
        elif response.status == "linked" and response.guardian_id:
            self._add_guardian(response)
            self.status = LinkStatus.LINKED
        return self.status

    def _add_guardian(self, response: PairingStatusResponse) -> None:
        if response.guardian_id in self.guardians:
            return
        is_admin = not self.guardians
        self.guardians[response.guardian_id] = LinkState(
            guardian_id=response.guardian_id,
            child_id=self.child_id,
            status=LinkStatus.LINKED,
            pin=self.pin,
            is_admin=is_admin,
            guardian_name=response.parent_name,
        )
        if is_admin and response.child_name:
            self.child_name = response.child_name
        logger.info(
            f"Guardian {response.guardian_id} linked to child {self.child_id}"
            f"{' as admin' if is_admin else ''}"
        )

    # Used by: LinkLivenessChecker, monitor.py (explicit unlink)
    def remove_guardian(self, guardian_id: str) -> bool:
        if self.guardians.pop(guardian_id, None) is None:
            return False
        logger.info(f"Guardian {guardian_id} removed from child {self.child_id}")
        if not self.guardians:
            self.child_name = None
            self.open_pairing_screen()
        return True

    def should_dismiss(self, now: datetime) -> bool:
        return self.dismiss_at is not None and now >= self.dismiss_at

    # Used by: monitor.py (pairing tick)
    def dismiss_if_due(self, now: datetime) -> bool:
        """Closes the pairing screen once the rejection notice has been shown long enough."""
        if not self.should_dismiss(now):
            return False
        self.dismiss_at = None
        self.screen_dismissed = True
        logger.info(f"Pairing screen for child {self.child_id} dismissed after rejection")
        return True

    def record_poll_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures == RECONNECTING_FAILURE_THRESHOLD:
            logger.warning(f"Pairing for child {self.child_id} is reconnecting")

    def record_poll_success(self) -> None:
        self.consecutive_failures = 0


class PairingPoller:
    """Driven by a fixed scheduler tick; skips ticks while backing off."""

    def __init__(
        self,
        session: PairingSession,
        backend: EventBackend,
        clock: Optional[Clock] = None,
        interval: float = PAIRING_POLL_INTERVAL_SECONDS,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self.session = session
        self.backend = backend
        self.clock = clock or SystemClock()
        self.interval = interval
        self.backoff = backoff or ExponentialBackoff(base_delay=interval)
        self.next_poll_at: Optional[datetime] = None

    def is_due(self) -> bool:
        if not self.session.is_polling:
            return False
        return self.next_poll_at is None or self.clock.now() >= self.next_poll_at

    async def tick(self) -> Optional[LinkStatus]:
        if not self.is_due():
            return None
        return await self.poll_once()

    async def poll_once(self) -> Optional[LinkStatus]:
        pin = self.session.pin
        return self.apply(pin, await self.fetch(pin))

    # Used by: monitor.py (pairing tick, outside the child lock)
    async def fetch(self, pin: str) -> Optional[PairingStatusResponse]:
        """None when the backend could not be reached."""
        try:
            return await self.backend.check_pairing_code(pin)
        except BackendUnavailable as e:
            logger.warning(f"Pairing poll failed for child {self.session.child_id}: {e}")
            return None

    # Used by: monitor.py (pairing tick, under the child lock)
    def apply(self, pin: str, response: Optional[PairingStatusResponse]) -> Optional[LinkStatus]:
        if pin != self.session.pin:
            # A fresh PIN was issued while the request was in flight
            return None
        now = self.clock.now()
        if response is None:
            self.session.record_poll_failure()
            delay = self.backoff.failure()
            self.next_poll_at = now + timedelta(seconds=delay)
            logger.info(f"Next pairing poll for child {self.session.child_id} in {delay:.1f}s")
            return None

        self.session.record_poll_success()
        self.backoff.success()
        self.next_poll_at = now + timedelta(seconds=self.interval)
        return self.session.apply_status(response, now)


class LinkLivenessChecker:
    def __init__(self, session: PairingSession, backend: EventBackend):
        self.session = session
        self.backend = backend

    async def check_once(self) -> List[str]:
        return self.apply(await self.fetch())

    # Used by: monitor.py (liveness job, outside the child lock)
    async def fetch(self) -> Dict[str, bool]:
        """guardian_id -> link still exists. Guardians the backend could not answer for are left out."""
        results = {}
        for guardian_id in list(self.session.guardians):
            try:
                results[guardian_id] = await self.backend.check_link(guardian_id, self.session.child_id)
            except BackendUnavailable as e:
                logger.warning(f"Liveness check for {guardian_id} failed, keeping link: {e}")
        return results

    # Used by: monitor.py (liveness job, under the child lock)
    def apply(self, results: Dict[str, bool]) -> List[str]:
        removed = []
        for guardian_id, alive in results.items():
            if not alive and self.session.remove_guardian(guardian_id):
                removed.append(guardian_id)
        return removed


class PairingService:
    """Guardian side of pairing, backed by the event backend."""

    def __init__(self, backend: EventBackend, alert_manager: AlertLifecycleManager, clock: Optional[Clock] = None):
        self.backend = backend
        self.alert_manager = alert_manager
        self.clock = clock or SystemClock()

    # Used by: api/pairing.py (POST /pairing/register)
    async def register_pin(self, child_id: str, pin: str) -> bool:
        return await self.backend.register_pairing_code(pin, child_id)

    # Used by: api/pairing.py (GET /pairing/check)
    async def check_status(self, pin: str) -> PairingStatusResponse:
        return await self.backend.check_pairing_code(pin)

    # Used by: api/pairing.py (POST /pairing/link)
    async def submit_pin(
        self,
        pin: str,
        guardian_id: str,
        guardian_name: str,
        child_name: Optional[str] = None,
    ) -> PairingStatusResponse:
        pin = pin.strip()
        if len(pin) != PAIRING_PIN_LENGTH or not pin.isdigit():
            raise InvalidPinError("Invalid PIN")

        previous = await self.backend.check_pairing_code(pin)
        response = await self.backend.request_link(pin, guardian_id, guardian_name, child_name)
        if response.status == "not_found":
            raise InvalidPinError("Invalid PIN")

        is_new_request = previous.status != "waiting_for_approval" or previous.guardian_id != guardian_id
        if response.status == "waiting_for_approval" and is_new_request:
            await self._notify_admin(pin, guardian_name, response)
        return response

    async def _notify_admin(self, pin: str, requester_name: str, response: PairingStatusResponse) -> None:
        child_id = response.child_id
        links = await self.backend.get_linked_guardians(child_id)
        admin = next((link for link in links if link.is_admin), None)
        if admin is None:
            logger.warning(f"Connection request for child {child_id} has no admin to notify")
            return
        child_name = await self.backend.get_child_name(child_id) or "your child"
        alert = Alert(
            id=None,
            kind=AlertKind.CONNECTION_REQUEST,
            child_id=child_id,
            guardian_id=admin.guardian_id,
            timestamp=self.clock.now(),
            payload=build_payload(
                AlertKind.CONNECTION_REQUEST,
                pin=pin,
                requester_name=requester_name,
                child_name=child_name,
            ),
        )
        await self.alert_manager.submit(alert)

    # Used by: api/pairing.py (POST /pairing/decide)
    async def decide(self, pin: str, admin_guardian_id: str, approve: bool) -> PairingStatusResponse:
        """PermissionError when the caller is not the admin guardian."""
        return await self.backend.update_link_status(pin, admin_guardian_id, approve)

    # Used by: api/pairing.py (DELETE /pairing/link)
    async def unlink(self, guardian_id: str, child_id: str) -> bool:
        return await self.backend.remove_link(guardian_id, child_id)


_pairing_service: Optional[PairingService] = None


def get_pairing_service() -> PairingService:
    global _pairing_service
    if _pairing_service is None:
        _pairing_service = PairingService(get_event_store(), get_alert_manager())
    return _pairing_service
