"""SQL-backed location/event backend: zones, settings, alerts, watermarks, pairing codes and links."""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text

from atsight.core.clock import from_epoch, to_epoch
from atsight.core.database import get_database
from atsight.db.models import GuardianLink, NotificationSettings, PairingCode, PairingStatusResponse
from atsight.services.alert_events import Alert, AlertValidationError, parse_alert_document
from atsight.services.backend import BackendUnavailable
from atsight.services.signal_ingest import LatLon
from atsight.services.zones import Zone

logger = logging.getLogger(__name__)

STATUS_WAITING = "waiting_for_approval"
STATUS_REJECTED = "rejected"
STATUS_LINKED = "linked"


def _alert_row_to_document(row) -> Dict[str, Any]:
    try:
        payload = json.loads(row["payload"] or "{}")
    except json.JSONDecodeError:
        payload = {}
    return {
        "id": row["id"],
        "kind": row["kind"],
        "child_id": row["child_id"],
        "guardian_id": row["guardian_id"],
        "ts": row["ts"],
        "payload": payload,
        "processed": bool(row["processed"]),
    }


class EventStore:
    """Implements EventBackend on top of the shared DatabaseManager."""

    def __init__(self):
        self.database = get_database()

    # ---------------------------------------------------------------- zones

    # Used by: monitor.py (location updates), api/children.py
    async def get_zones(self, child_id: str) -> List[Zone]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        SELECT id, name, lat, lon, radius_meters, is_safe
                        FROM zones
                        WHERE child_id = :child_id
                        ORDER BY position ASC
                    '''),
                    {"child_id": child_id}
                )
                rows = result.mappings().all()
        except Exception as e:
            logger.error(f"Failed to get zones for child {child_id}: {e}")
            return []

        zones = []
        for row in rows:
            try:
                zones.append(Zone(
                    id=row["id"],
                    center=LatLon(row["lat"], row["lon"]),
                    radius_meters=row["radius_meters"],
                    name=row["name"],
                    is_safe=bool(row["is_safe"]),
                ))
            except ValueError as e:
                logger.warning(f"Skipping invalid zone {row['id']} for child {child_id}: {e}")
        return zones

    # Used by: api/children.py (PUT zones)
    async def replace_zones(self, child_id: str, zones: List[Zone]) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text("DELETE FROM zones WHERE child_id = :child_id"),
                    {"child_id": child_id}
                )
                for position, zone in enumerate(zones):
                    await session.execute(
                        text('''
                            INSERT INTO zones (id, child_id, name, lat, lon, radius_meters, is_safe, position)
                            VALUES (:id, :child_id, :name, :lat, :lon, :radius_meters, :is_safe, :position)
                        '''),
                        {
                            "id": zone.id,
                            "child_id": child_id,
                            "name": zone.name,
                            "lat": zone.center.lat,
                            "lon": zone.center.lon,
                            "radius_meters": zone.radius_meters,
                            "is_safe": zone.is_safe,
                            "position": position,
                        }
                    )
                await session.commit()
                logger.info(f"Saved {len(zones)} zones for child {child_id}")
                return True
        except Exception as e:
            logger.error(f"Failed to save zones for child {child_id}: {e}")
            return False

    # ------------------------------------------------------------- settings

    # Used by: alert_service.py (preference gating), monitor.py (battery threshold), api/children.py
    async def get_notification_settings(self, child_id: str) -> NotificationSettings:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        SELECT safe_zone_alert, unsafe_zone_alert, low_battery_alert,
                               watch_removed_alert, new_connection_request, sound, low_battery_threshold
                        FROM notification_settings
                        WHERE child_id = :child_id
                    '''),
                    {"child_id": child_id}
                )
                row = result.mappings().first()
                if row is None:
                    return NotificationSettings()
                return NotificationSettings.model_validate(dict(row))
        except Exception as e:
            logger.error(f"Failed to get notification settings for child {child_id}: {e}")
            return NotificationSettings()

    # Used by: api/children.py (PUT settings)
    async def save_notification_settings(self, child_id: str, prefs: NotificationSettings) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO notification_settings
                        (child_id, safe_zone_alert, unsafe_zone_alert, low_battery_alert,
                         watch_removed_alert, new_connection_request, sound, low_battery_threshold)
                        VALUES (:child_id, :safe_zone_alert, :unsafe_zone_alert, :low_battery_alert,
                                :watch_removed_alert, :new_connection_request, :sound, :low_battery_threshold)
                        ON CONFLICT (child_id)
                        DO UPDATE SET
                            safe_zone_alert = excluded.safe_zone_alert,
                            unsafe_zone_alert = excluded.unsafe_zone_alert,
                            low_battery_alert = excluded.low_battery_alert,
                            watch_removed_alert = excluded.watch_removed_alert,
                            new_connection_request = excluded.new_connection_request,
                            sound = excluded.sound,
                            low_battery_threshold = excluded.low_battery_threshold
                    '''),
                    {"child_id": child_id, **prefs.model_dump()}
                )
                await session.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to save notification settings for child {child_id}: {e}")
            return False

    # -------------------------------------------------------------- children

    async def get_child_name(self, child_id: str) -> Optional[str]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text("SELECT name FROM children WHERE child_id = :child_id"),
                    {"child_id": child_id}
                )
                row = result.fetchone()
                return row[0] if row else None
        except Exception as e:
            logger.error(f"Failed to get name for child {child_id}: {e}")
            return None

    async def set_child_name(self, child_id: str, name: Optional[str]) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO children (child_id, name) VALUES (:child_id, :name)
                        ON CONFLICT (child_id) DO UPDATE SET name = excluded.name
                    '''),
                    {"child_id": child_id, "name": name}
                )
                await session.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to set name for child {child_id}: {e}")
            return False

    # ---------------------------------------------------------------- links

    # Used by: alert_service.py (fan-out), pairing.py, api/pairing.py
    async def get_linked_guardians(self, child_id: str) -> List[GuardianLink]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        SELECT guardian_id, child_id, guardian_name, is_admin, linked_ts
                        FROM guardian_links
                        WHERE child_id = :child_id
                        ORDER BY linked_ts ASC
                    '''),
                    {"child_id": child_id}
                )
                return [
                    GuardianLink(
                        guardian_id=row["guardian_id"],
                        child_id=row["child_id"],
                        guardian_name=row["guardian_name"],
                        is_admin=bool(row["is_admin"]),
                        linked_at=from_epoch(row["linked_ts"]),
                    )
                    for row in result.mappings().all()
                ]
        except Exception as e:
            logger.error(f"Failed to get guardians for child {child_id}: {e}")
            return []

    async def _insert_link(self, session, guardian_id: str, child_id: str, guardian_name: str, is_admin: bool):
        await session.execute(
            text('''
                INSERT INTO guardian_links (guardian_id, child_id, guardian_name, is_admin, linked_ts)
                VALUES (:guardian_id, :child_id, :guardian_name, :is_admin, :linked_ts)
                ON CONFLICT (guardian_id, child_id) DO NOTHING
            '''),
            {
                "guardian_id": guardian_id,
                "child_id": child_id,
                "guardian_name": guardian_name,
                "is_admin": is_admin,
                "linked_ts": time.time(),
            }
        )

    # Used by: pairing.py (LinkLivenessChecker)
    async def check_link(self, guardian_id: str, child_id: str) -> bool:
        """A database failure raises BackendUnavailable rather than reporting the link as gone."""
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        SELECT 1 FROM guardian_links
                        WHERE guardian_id = :guardian_id AND child_id = :child_id
                    '''),
                    {"guardian_id": guardian_id, "child_id": child_id}
                )
                return result.first() is not None
        except Exception as e:
            logger.error(f"Failed to check link {guardian_id} -> {child_id}: {e}")
            raise BackendUnavailable(str(e)) from e

    # Used by: pairing.py (PairingService.unlink)
    async def remove_link(self, guardian_id: str, child_id: str) -> bool:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        DELETE FROM guardian_links
                        WHERE guardian_id = :guardian_id AND child_id = :child_id
                    '''),
                    {"guardian_id": guardian_id, "child_id": child_id}
                )
                await session.commit()
                removed = result.rowcount > 0
                if removed:
                    logger.info(f"Removed link {guardian_id} -> {child_id}")
                return removed
        except Exception as e:
            logger.error(f"Failed to remove link {guardian_id} -> {child_id}: {e}")
            return False

    # --------------------------------------------------------------- alerts

    # Used by: alert_service.py (AlertLifecycleManager.submit)
    async def post_alert(self, alert: Alert) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO alerts (id, kind, child_id, guardian_id, ts, payload, processed)
                        VALUES (:id, :kind, :child_id, :guardian_id, :ts, :payload, :processed)
                    '''),
                    {
                        "id": alert.id,
                        "kind": alert.kind.value,
                        "child_id": alert.child_id,
                        "guardian_id": alert.guardian_id,
                        "ts": to_epoch(alert.timestamp),
                        "payload": json.dumps(alert.payload.model_dump(mode="json")),
                        "processed": alert.processed,
                    }
                )
                await session.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to store alert {alert.id}: {e}")
            return False

    # Used by: alert_service.py (AlertSubscription.poll), api/alerts.py (halt status)
    async def fetch_alerts(
        self,
        since: Optional[datetime] = None,
        guardian_id: Optional[str] = None,
        child_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT id, kind, child_id, guardian_id, ts, payload, processed FROM alerts WHERE 1 = 1"
        params: Dict[str, Any] = {}
        if since is not None:
            query += " AND ts > :since"
            params["since"] = to_epoch(since)
        if guardian_id is not None:
            query += " AND guardian_id = :guardian_id"
            params["guardian_id"] = guardian_id
        if child_id is not None:
            query += " AND child_id = :child_id"
            params["child_id"] = child_id
        statement = text(query + (" AND kind IN :kinds" if kinds else "") + " ORDER BY ts ASC")
        if kinds:
            statement = statement.bindparams(bindparam("kinds", expanding=True))
            params["kinds"] = list(kinds)

        try:
            async with self.database.session() as session:
                result = await session.execute(statement, params)
                return [_alert_row_to_document(row) for row in result.mappings().all()]
        except Exception as e:
            logger.error(f"Failed to fetch alerts: {e}")
            return []

    # Used by: api/alerts.py (GET /alerts/history)
    async def list_alerts(
        self,
        guardian_id: str,
        limit: int,
        offset: int = 0,
        child_id: Optional[str] = None,
    ) -> List[Alert]:
        query = '''
            SELECT id, kind, child_id, guardian_id, ts, payload, processed
            FROM alerts
            WHERE guardian_id = :guardian_id
        '''
        params: Dict[str, Any] = {"guardian_id": guardian_id, "limit": limit, "offset": offset}
        if child_id is not None:
            query += " AND child_id = :child_id"
            params["child_id"] = child_id
        query += " ORDER BY ts DESC LIMIT :limit OFFSET :offset"

        try:
            async with self.database.session() as session:
                result = await session.execute(text(query), params)
                rows = result.mappings().all()
        except Exception as e:
            logger.error(f"Failed to list alerts for {guardian_id}: {e}")
            return []

        alerts = []
        for row in rows:
            try:
                alerts.append(parse_alert_document(_alert_row_to_document(row)))
            except AlertValidationError as e:
                logger.warning(f"Skipping unreadable alert {row['id']}: {e}")
        return alerts

    # Used by: api/alerts.py (GET /alerts/history)
    async def count_alerts(self, guardian_id: str, child_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM alerts WHERE guardian_id = :guardian_id"
        params: Dict[str, Any] = {"guardian_id": guardian_id}
        if child_id is not None:
            query += " AND child_id = :child_id"
            params["child_id"] = child_id

        try:
            async with self.database.session() as session:
                result = await session.execute(text(query), params)
                return int(result.scalar() or 0)
        except Exception as e:
            logger.error(f"Failed to count alerts for {guardian_id}: {e}")
            return 0

    # Used by: alert_service.py (acknowledge), api/alerts.py (dismiss)
    async def mark_alert_processed(self, alert_id: str, guardian_id: str) -> bool:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text('''
                        UPDATE alerts SET processed = :processed
                        WHERE id = :alert_id AND guardian_id = :guardian_id
                    '''),
                    {"processed": True, "alert_id": alert_id, "guardian_id": guardian_id}
                )
                await session.commit()
                return result.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to mark alert {alert_id} processed: {e}")
            return False

    # ----------------------------------------------------------- watermarks

    # Used by: alert_service.py (AlertSubscription)
    async def get_watermark(self, subscriber_id: str) -> Optional[datetime]:
        try:
            async with self.database.session() as session:
                result = await session.execute(
                    text("SELECT ts FROM alert_watermarks WHERE guardian_id = :subscriber_id"),
                    {"subscriber_id": subscriber_id}
                )
                row = result.fetchone()
                return from_epoch(row[0]) if row else None
        except Exception as e:
            logger.error(f"Failed to get watermark for {subscriber_id}: {e}")
            return None

    # Used by: alert_service.py (AlertSubscription.persist)
    async def update_watermark(self, subscriber_id: str, ts: datetime) -> bool:
        """Never moves a stored watermark backwards."""
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO alert_watermarks (guardian_id, ts)
                        VALUES (:subscriber_id, :ts)
                        ON CONFLICT (guardian_id)
                        DO UPDATE SET ts = CASE
                            WHEN excluded.ts > alert_watermarks.ts THEN excluded.ts
                            ELSE alert_watermarks.ts
                        END
                    '''),
                    {"subscriber_id": subscriber_id, "ts": to_epoch(ts)}
                )
                await session.commit()
                return True
        except Exception as e:
            logger.error(f"Failed to update watermark for {subscriber_id}: {e}")
            return False

    # -------------------------------------------------------------- pairing

    async def _get_pairing_code(self, session, pin: str) -> Optional[PairingCode]:
        result = await session.execute(
            text('''
                SELECT pin, guardian_id, child_id, child_name, parent_name,
                       admin_id, admin_child_id, approval_status, created_ts
                FROM pairing_codes
                WHERE pin = :pin
            '''),
            {"pin": pin}
        )
        row = result.mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["created_at"] = from_epoch(data.pop("created_ts"))
        data["approval_status"] = data["approval_status"] or ""
        return PairingCode.model_validate(data)

    async def _set_pairing_state(self, session, pin: str, **fields) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in fields)
        await session.execute(
            text(f"UPDATE pairing_codes SET {assignments} WHERE pin = :pin"),
            {"pin": pin, **fields}
        )

    # Used by: pairing.py (PairingService.register_pin)
    async def register_pairing_code(self, pin: str, child_id: str) -> bool:
        try:
            async with self.database.session() as session:
                await session.execute(
                    text('''
                        INSERT INTO pairing_codes (pin, child_id, approval_status, created_ts)
                        VALUES (:pin, :child_id, '', :created_ts)
                        ON CONFLICT (pin)
                        DO UPDATE SET
                            child_id = excluded.child_id,
                            guardian_id = NULL,
                            parent_name = NULL,
                            admin_id = NULL,
                            approval_status = '',
                            created_ts = excluded.created_ts
                    '''),
                    {"pin": pin, "child_id": child_id, "created_ts": time.time()}
                )
                await session.commit()
                logger.info(f"Registered pairing code for child {child_id}")
                return True
        except Exception as e:
            logger.error(f"Failed to register pairing code for child {child_id}: {e}")
            return False

    def _status_for(self, code: Optional[PairingCode], child_name: Optional[str]) -> PairingStatusResponse:
        if code is None or not code.guardian_id:
            return PairingStatusResponse(status="not_found")
        if code.approval_status == STATUS_REJECTED:
            return PairingStatusResponse(status="rejected", guardian_id=code.guardian_id, child_id=code.child_id)
        if code.approval_status == STATUS_LINKED:
            return PairingStatusResponse(
                status="linked",
                guardian_id=code.guardian_id,
                child_id=code.child_id,
                child_name=child_name,
                parent_name=code.parent_name,
            )
        return PairingStatusResponse(
            status="waiting_for_approval",
            guardian_id=code.guardian_id,
            child_id=code.child_id,
            parent_name=code.parent_name,
        )

    # Used by: pairing.py (PairingPoller via watch), api/pairing.py (GET /pairing/check)
    async def check_pairing_code(self, pin: str) -> PairingStatusResponse:
        try:
            async with self.database.session() as session:
                code = await self._get_pairing_code(session, pin)
        except Exception as e:
            logger.error(f"Failed to check pairing code: {e}")
            raise BackendUnavailable(str(e)) from e
        child_name = await self.get_child_name(code.child_id) if code and code.child_id else None
        return self._status_for(code, child_name)

    # Used by: pairing.py (PairingService.submit_pin)
    async def request_link(
        self, pin: str, guardian_id: str, guardian_name: str, child_name: Optional[str] = None
    ) -> PairingStatusResponse:
        """Guardian entered a PIN. The first guardian of a child is linked at once as admin."""
        try:
            async with self.database.session() as session:
                code = await self._get_pairing_code(session, pin)
                if code is None or not code.child_id:
                    return PairingStatusResponse(status="not_found")
                if code.approval_status == STATUS_REJECTED:
                    return self._status_for(code, None)

                result = await session.execute(
                    text('''
                        SELECT guardian_id, is_admin FROM guardian_links
                        WHERE child_id = :child_id
                    '''),
                    {"child_id": code.child_id}
                )
                links = result.mappings().all()
                admin_id = next((row["guardian_id"] for row in links if row["is_admin"]), None)
                already_linked = any(row["guardian_id"] == guardian_id for row in links)

                if admin_id is None or already_linked:
                    await self._insert_link(session, guardian_id, code.child_id, guardian_name, admin_id is None)
                    if admin_id is None and child_name:
                        await session.execute(
                            text('''
                                INSERT INTO children (child_id, name) VALUES (:child_id, :name)
                                ON CONFLICT (child_id) DO UPDATE SET name = excluded.name
                            '''),
                            {"child_id": code.child_id, "name": child_name}
                        )
                    await self._set_pairing_state(
                        session, pin,
                        guardian_id=guardian_id,
                        parent_name=guardian_name,
                        admin_id=admin_id or guardian_id,
                        approval_status=STATUS_LINKED,
                    )
                else:
                    await self._set_pairing_state(
                        session, pin,
                        guardian_id=guardian_id,
                        parent_name=guardian_name,
                        admin_id=admin_id,
                        approval_status=STATUS_WAITING,
                    )
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to process link request from {guardian_id}: {e}")
            raise BackendUnavailable(str(e)) from e

        return await self.check_pairing_code(pin)

    # Used by: pairing.py (PairingService.decide)
    async def update_link_status(self, pin: str, admin_guardian_id: str, approve: bool) -> PairingStatusResponse:
        """Raises PermissionError when the caller is not the child's admin guardian."""
        try:
            async with self.database.session() as session:
                code = await self._get_pairing_code(session, pin)
                if code is None or not code.child_id:
                    return PairingStatusResponse(status="not_found")

                result = await session.execute(
                    text('''
                        SELECT 1 FROM guardian_links
                        WHERE child_id = :child_id AND guardian_id = :guardian_id AND is_admin = :is_admin
                    '''),
                    {"child_id": code.child_id, "guardian_id": admin_guardian_id, "is_admin": True}
                )
                if result.first() is None:
                    raise PermissionError(f"Guardian {admin_guardian_id} is not the admin of child {code.child_id}")

                if code.approval_status == STATUS_WAITING:
                    if approve:
                        await self._insert_link(
                            session, code.guardian_id, code.child_id, code.parent_name or "Parent", False
                        )
                        await self._set_pairing_state(session, pin, approval_status=STATUS_LINKED)
                    else:
                        await self._set_pairing_state(session, pin, approval_status=STATUS_REJECTED)
                    await session.commit()
                    logger.info(
                        f"Admin {admin_guardian_id} {'approved' if approve else 'rejected'} "
                        f"{code.guardian_id} for child {code.child_id}"
                    )
        except PermissionError:
            raise
        except Exception as e:
            logger.error(f"Failed to update link status: {e}")
            raise BackendUnavailable(str(e)) from e

        return await self.check_pairing_code(pin)


_event_store: Optional[EventStore] = None


# Used by: alert_service.py, monitor.py, pairing.py, api/*.py
def get_event_store() -> EventStore:
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store
