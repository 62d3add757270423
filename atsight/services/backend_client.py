"""aiohttp client for a remote AtSight backend. Same contract as EventStore.

Used when the engine runs away from the database (e.g. on a companion
device) and talks to the API instead. Network failures and 5xx responses
raise BackendUnavailable so pollers can back off.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from atsight.core.clock import from_epoch, to_epoch
from atsight.db.models import GuardianLink, NotificationSettings, PairingStatusResponse
from atsight.services.alert_events import Alert
from atsight.services.backend import BackendUnavailable
from atsight.services.signal_ingest import LatLon
from atsight.services.zones import Zone

logger = logging.getLogger(__name__)


class HttpEventBackend:
    def __init__(self, base_url: str, timeout_seconds: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        allow_statuses: Iterable[int] = (),
    ):
        """Returns (status, decoded body). Raises BackendUnavailable on transport errors and 5xx."""
        url = self.base_url + path
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, params=params, json=json_body) as response:
                    if response.status >= 500:
                        raise BackendUnavailable(f"{method} {path} returned {response.status}")
                    if response.status >= 400 and response.status not in allow_statuses:
                        text_body = await response.text()
                        raise BackendUnavailable(f"{method} {path} returned {response.status}: {text_body}")
                    if response.content_type == "application/json":
                        return response.status, await response.json()
                    return response.status, None
        except aiohttp.ClientError as e:
            logger.error(f"Network error calling {method} {path}: {e}")
            raise BackendUnavailable(str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error(f"Timeout calling {method} {path}")
            raise BackendUnavailable(f"timeout calling {path}") from e

    async def get_zones(self, child_id: str) -> List[Zone]:
        _, body = await self._request("GET", f"/children/{child_id}/zones")
        zones = []
        for item in body or []:
            try:
                zones.append(Zone(
                    id=item["id"],
                    center=LatLon(item["lat"], item["lon"]),
                    radius_meters=item["radius_meters"],
                    name=item["name"],
                    is_safe=item["is_safe"],
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid zone for child {child_id}: {e}")
        return zones

    async def get_notification_settings(self, child_id: str) -> NotificationSettings:
        _, body = await self._request("GET", f"/children/{child_id}/settings")
        return NotificationSettings.model_validate(body or {})

    async def get_linked_guardians(self, child_id: str) -> List[GuardianLink]:
        _, body = await self._request("GET", f"/children/{child_id}/guardians")
        return [GuardianLink.model_validate(item) for item in body or []]

    async def get_child_name(self, child_id: str) -> Optional[str]:
        status, body = await self._request("GET", f"/children/{child_id}", allow_statuses=(404,))
        if status == 404 or not body:
            return None
        return body.get("name")

    async def fetch_alerts(
        self,
        since: Optional[datetime] = None,
        guardian_id: Optional[str] = None,
        child_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if since is not None:
            params["since"] = str(to_epoch(since))
        if guardian_id is not None:
            params["guardian_id"] = guardian_id
        if child_id is not None:
            params["child_id"] = child_id
        if kinds:
            params["kinds"] = ",".join(kinds)
        _, body = await self._request("GET", "/alerts/feed", params=params)
        return body or []

    async def post_alert(self, alert: Alert) -> bool:
        await self._request("POST", "/alerts", json_body=alert.to_dict())
        return True

    async def mark_alert_processed(self, alert_id: str, guardian_id: str) -> bool:
        status, _ = await self._request(
            "POST", f"/alerts/{alert_id}/processed", params={"guardian_id": guardian_id}, allow_statuses=(404,)
        )
        return status != 404

    async def get_watermark(self, subscriber_id: str) -> Optional[datetime]:
        _, body = await self._request("GET", f"/alerts/watermarks/{subscriber_id}")
        if not body or body.get("ts") is None:
            return None
        return from_epoch(body["ts"])

    async def update_watermark(self, subscriber_id: str, ts: datetime) -> bool:
        await self._request("PUT", f"/alerts/watermarks/{subscriber_id}", json_body={"ts": to_epoch(ts)})
        return True

    async def register_pairing_code(self, pin: str, child_id: str) -> bool:
        await self._request("POST", "/pairing/register", json_body={"pin": pin, "child_id": child_id})
        return True

    async def check_pairing_code(self, pin: str) -> PairingStatusResponse:
        _, body = await self._request("GET", "/pairing/check", params={"pin": pin})
        return PairingStatusResponse.model_validate(body)

    async def request_link(
        self, pin: str, guardian_id: str, guardian_name: str, child_name: Optional[str] = None
    ) -> PairingStatusResponse:
        status, body = await self._request(
            "POST",
            "/pairing/link",
            json_body={
                "pin": pin,
                "guardian_id": guardian_id,
                "guardian_name": guardian_name,
                "child_name": child_name,
            },
            allow_statuses=(404,),
        )
        if status == 404:
            return PairingStatusResponse(status="not_found")
        return PairingStatusResponse.model_validate(body)

    async def update_link_status(self, pin: str, admin_guardian_id: str, approve: bool) -> PairingStatusResponse:
        status, body = await self._request(
            "POST",
            "/pairing/decide",
            json_body={"pin": pin, "admin_guardian_id": admin_guardian_id, "approve": approve},
            allow_statuses=(403,),
        )
        if status == 403:
            raise PermissionError(f"Guardian {admin_guardian_id} is not the admin for PIN {pin}")
        return PairingStatusResponse.model_validate(body)

    async def check_link(self, guardian_id: str, child_id: str) -> bool:
        status, _ = await self._request(
            "GET", "/pairing/link", params={"guardian_id": guardian_id, "child_id": child_id}, allow_statuses=(404,)
        )
        return status != 404

    async def remove_link(self, guardian_id: str, child_id: str) -> bool:
        status, _ = await self._request(
            "DELETE", "/pairing/link", params={"guardian_id": guardian_id, "child_id": child_id}, allow_statuses=(404,)
        )
        return status != 404
