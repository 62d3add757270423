"""Notification sink: Web Push delivery of alert popups and haptic cues to guardian and watch clients."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Protocol

from pywebpush import WebPushException, webpush
from sqlalchemy import text

from atsight.core.database import get_database
from atsight.core.settings import settings

logger = logging.getLogger(__name__)


# Used by: alert_service.py, emergency.py (type hints)
class NotificationSink(Protocol):
    async def present_alert(
        self,
        recipient_id: str,
        title: str,
        body: str,
        sound_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        ...

    async def trigger_haptic(self, recipient_id: str, pattern: str) -> bool:
        """pattern is one of "error", "failure", "success"."""
        ...


# Used by: alert_service.py (get_alert_manager), emergency.py, api/alerts.py
class PushService:
    def __init__(self):
        self.database = get_database()
        self._vapid_private_key: Optional[str] = None
        self._vapid_public_key: Optional[str] = None
        self._vapid_claims: Dict[str, str] = {}
        self._load_vapid_config()

    def _load_vapid_config(self):
        self._vapid_private_key = settings.VAPID_PRIVATE_KEY or None
        self._vapid_public_key = settings.VAPID_PUBLIC_KEY or None

        if self._vapid_private_key:
            self._vapid_claims = {"sub": f"mailto:{settings.VAPID_EMAIL}"}
            logger.info("VAPID configuration loaded")
        else:
            logger.warning("VAPID keys not configured. Push notifications will not be delivered.")

    @property
    def is_configured(self) -> bool:
        return bool(self._vapid_private_key) and bool(self._vapid_public_key)

    @property
    def public_key(self) -> Optional[str]:
        return self._vapid_public_key

    # Used by: api/alerts.py (POST /push/subscribe)
    async def save_subscription(self, recipient_id: str, endpoint: str, p256dh_key: str, auth_key: str) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO push_subscriptions
                        (recipient_id, endpoint, p256dh_key, auth_key, updated_ts)
                        VALUES (:recipient_id, :endpoint, :p256dh_key, :auth_key, :updated_ts)
                        ON CONFLICT (recipient_id)
                        DO UPDATE SET
                            endpoint = excluded.endpoint,
                            p256dh_key = excluded.p256dh_key,
                            auth_key = excluded.auth_key,
                            updated_ts = excluded.updated_ts
                    '''),
                    {
                        "recipient_id": recipient_id,
                        "endpoint": endpoint,
                        "p256dh_key": p256dh_key,
                        "auth_key": auth_key,
                        "updated_ts": time.time(),
                    }
                )
                await session.commit()
                logger.info(f"Saved push subscription for {recipient_id}")
                return True
        except Exception as e:
            logger.error(f"Failed to save push subscription for {recipient_id}: {e}")
            return False

    # Used by: api/alerts.py (POST /push/unsubscribe), _send (removes expired)
    async def remove_subscription(self, recipient_id: str) -> bool:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text("DELETE FROM push_subscriptions WHERE recipient_id = :recipient_id"),
                    {"recipient_id": recipient_id}
                )
                await session.commit()
                deleted = result.rowcount > 0
                if deleted:
                    logger.info(f"Removed push subscription for {recipient_id}")
                return deleted
        except Exception as e:
            logger.error(f"Failed to remove push subscription for {recipient_id}: {e}")
            return False

    async def get_subscription(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        SELECT endpoint, p256dh_key, auth_key
                        FROM push_subscriptions
                        WHERE recipient_id = :recipient_id
                    '''),
                    {"recipient_id": recipient_id}
                )
                row = result.mappings().first()
                if row:
                    return {
                        "endpoint": row["endpoint"],
                        "keys": {"p256dh": row["p256dh_key"], "auth": row["auth_key"]},
                    }
                return None
        except Exception as e:
            logger.error(f"Failed to get push subscription for {recipient_id}: {e}")
            return None

    # Used by: api/alerts.py (GET /push/status)
    async def has_subscription(self, recipient_id: str) -> bool:
        return await self.get_subscription(recipient_id) is not None

    async def _send(self, recipient_id: str, message: Dict[str, Any]) -> bool:
        if not self.is_configured:
            logger.debug("Push notifications not configured, skipping")
            return False

        subscription = await self.get_subscription(recipient_id)
        if not subscription:
            logger.debug(f"No push subscription found for {recipient_id}")
            return False

        try:
            # webpush is a blocking requests call
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription,
                data=json.dumps(message),
                vapid_private_key=self._vapid_private_key,
                vapid_claims=dict(self._vapid_claims),
            )
            return True
        except WebPushException as e:
            if e.response is not None and e.response.status_code in (404, 410):
                logger.info(f"Push subscription for {recipient_id} is no longer valid, removing")
                await self.remove_subscription(recipient_id)
            logger.error(f"Failed to send push to {recipient_id}: {e}")
            return False

    # Used by: alert_service.py (AlertLifecycleManager.submit)
    async def present_alert(
        self,
        recipient_id: str,
        title: str,
        body: str,
        sound_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        sent = await self._send(recipient_id, {
            "type": "alert",
            "title": title,
            "body": body,
            "sound": f"{sound_id}.wav",
            "data": data or {},
        })
        if sent:
            logger.info(f"Sent push notification to {recipient_id}: {title}")
        return sent

    # Used by: emergency.py (SOS / HALT haptic loops)
    async def trigger_haptic(self, recipient_id: str, pattern: str) -> bool:
        return await self._send(recipient_id, {"type": "haptic", "pattern": pattern})


_push_service: Optional[PushService] = None


def get_push_service() -> PushService:
    global _push_service
    if _push_service is None:
        _push_service = PushService()
    return _push_service
