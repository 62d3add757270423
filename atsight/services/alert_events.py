"""Alert model: one payload type per alert kind, validated at the backend boundary."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from atsight.core.clock import from_epoch, to_epoch
from atsight.core.utils import LEGACY_EVENT_NAMES

logger = logging.getLogger(__name__)


class AlertKind(str, Enum):
    WATCH_REMOVED = "watch_removed"
    WATCH_BACK_ON = "watch_back_on"
    BATTERY_LOW = "battery_low"
    SOS = "sos"
    HALT = "halt"
    SAFE_ZONE_EXIT = "safe_zone_exit"
    UNSAFE_ZONE_ENTRY = "unsafe_zone_entry"
    CONNECTION_REQUEST = "connection_request"


class AlertValidationError(ValueError):
    pass


class _Payload(BaseModel):
    child_name: str = Field("Your child", alias="childName")

    class Config:
        populate_by_name = True


class WatchRemovedPayload(_Payload):
    kind: Literal["watch_removed"] = "watch_removed"


class WatchBackOnPayload(_Payload):
    kind: Literal["watch_back_on"] = "watch_back_on"


class BatteryLowPayload(_Payload):
    kind: Literal["battery_low"] = "battery_low"
    battery_level: int = Field(..., alias="batteryLevel", ge=0, le=100)
    threshold: Optional[int] = None


class SosPayload(_Payload):
    kind: Literal["sos"] = "sos"
    title: str = "SOS Alert"
    body: str = "An SOS has been triggered!"


class HaltPayload(_Payload):
    kind: Literal["halt"] = "halt"


class SafeZoneExitPayload(_Payload):
    kind: Literal["safe_zone_exit"] = "safe_zone_exit"
    zone_name: str = Field(..., alias="zoneName")
    distance_outside_m: float = Field(0.0, alias="distanceOutside")


class UnsafeZoneEntryPayload(_Payload):
    kind: Literal["unsafe_zone_entry"] = "unsafe_zone_entry"
    zone_name: str = Field(..., alias="zoneName")
    depth_m: float = Field(0.0, alias="depth")
    repeat: bool = False


class ConnectionRequestPayload(_Payload):
    kind: Literal["connection_request"] = "connection_request"
    pin: str
    requester_name: str = Field("A guardian", alias="requesterName")


AlertPayload = Annotated[
    Union[
        WatchRemovedPayload,
        WatchBackOnPayload,
        BatteryLowPayload,
        SosPayload,
        HaltPayload,
        SafeZoneExitPayload,
        UnsafeZoneEntryPayload,
        ConnectionRequestPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(AlertPayload)


@dataclass
class Alert:
    id: Optional[str]
    kind: AlertKind
    child_id: str
    guardian_id: str
    timestamp: datetime
    payload: Any
    processed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "child_id": self.child_id,
            "guardian_id": self.guardian_id,
            "ts": to_epoch(self.timestamp),
            "payload": self.payload.model_dump(mode="json"),
            "processed": self.processed,
        }


# Used by: alert_service.py, emergency.py, pairing.py, monitor.py
def build_payload(kind: AlertKind, **fields) -> Any:
    try:
        return _payload_adapter.validate_python({**fields, "kind": kind.value})
    except ValidationError as e:
        raise AlertValidationError(f"Invalid {kind.value} payload: {e}") from e


def _resolve_kind(doc: Dict[str, Any]) -> AlertKind:
    raw = doc.get("kind") or doc.get("event") or doc.get("type")
    if not raw:
        raise AlertValidationError("Alert document has no kind")
    if raw == "zone_alert" and doc.get("isSafeZone"):
        return AlertKind.SAFE_ZONE_EXIT
    name = LEGACY_EVENT_NAMES.get(raw, raw)
    try:
        return AlertKind(name)
    except ValueError:
        raise AlertValidationError(f"Unknown alert kind '{raw}'")


def _resolve_timestamp(doc: Dict[str, Any]) -> datetime:
    raw = doc.get("ts", doc.get("timestamp"))
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return from_epoch(raw)
    if isinstance(raw, str):
        try:
            return from_epoch(float(raw))
        except ValueError:
            pass
        try:
            raw = datetime.fromisoformat(raw)
        except ValueError:
            pass
    if isinstance(raw, datetime):
        # Naive timestamps are UTC on the wire
        return from_epoch(to_epoch(raw))
    raise AlertValidationError(f"Alert document has invalid timestamp {raw!r}")


# Used by: alert_service.py (AlertSubscription.poll), event_store.py, backend_client.py
def parse_alert_document(doc: Dict[str, Any]) -> Alert:
    """Accepts both the snake_case store layout and the camelCase cloud-function layout."""
    if not isinstance(doc, dict):
        raise AlertValidationError(f"Alert document must be an object, got {type(doc).__name__}")

    kind = _resolve_kind(doc)
    timestamp = _resolve_timestamp(doc)

    child_id = doc.get("child_id") or doc.get("childId") or doc.get("childUid")
    guardian_id = doc.get("guardian_id") or doc.get("guardianId") or doc.get("parentId")
    if not child_id or not guardian_id:
        raise AlertValidationError("Alert document is missing childId or guardianId")

    payload_fields = doc.get("payload")
    if isinstance(payload_fields, str):
        try:
            payload_fields = json.loads(payload_fields)
        except json.JSONDecodeError as e:
            raise AlertValidationError(f"Alert payload is not valid JSON: {e}") from e
    if payload_fields is None:
        # Flat cloud-function documents carry the kind-specific fields at the top level
        payload_fields = {k: v for k, v in doc.items() if k not in ("kind", "event", "type", "payload")}
    if not isinstance(payload_fields, dict):
        raise AlertValidationError("Alert payload must be an object")

    return Alert(
        id=str(doc["id"]) if doc.get("id") is not None else None,
        kind=kind,
        child_id=str(child_id),
        guardian_id=str(guardian_id),
        timestamp=timestamp,
        payload=build_payload(kind, **payload_fields),
        processed=bool(doc.get("processed", False)),
    )


# Used by: alert_service.py (presentation), emergency.py
def render_alert(alert: Alert) -> Tuple[str, str]:
    p = alert.payload
    name = p.child_name

    if alert.kind == AlertKind.WATCH_REMOVED:
        return "Watch Removed", f"{name}'s watch may have been removed."
    if alert.kind == AlertKind.WATCH_BACK_ON:
        return "Watch Back On", f"{name}'s watch is being worn again."
    if alert.kind == AlertKind.BATTERY_LOW:
        return "Low Battery Alert", f"{name}'s watch battery is at {p.battery_level}%"
    if alert.kind == AlertKind.SOS:
        return p.title, p.body
    if alert.kind == AlertKind.HALT:
        return "HALT", f"Stop! A guardian sent a HALT signal to {name}."
    if alert.kind == AlertKind.SAFE_ZONE_EXIT:
        title = f"Alert! Child '{name}' has exited the safe zone: '{p.zone_name}'!"
        body = ""
        if p.distance_outside_m > 0:
            body = f"Info: They are now approx. {int(p.distance_outside_m)} meters outside the zone's border!"
        return title, body
    if alert.kind == AlertKind.UNSAFE_ZONE_ENTRY:
        if p.repeat:
            return (
                f"Alert! Child '{name}' is still in the danger zone: '{p.zone_name}'!",
                f"They have remained in the zone for over 2 minutes! "
                f"They are approximately {int(p.depth_m)} meters deep inside the danger zone!",
            )
        return (
            f"Alert! Child '{name}' has entered the danger zone: '{p.zone_name}'!",
            f"Info: They are approximately {int(p.depth_m)} meters deep inside the danger zone!",
        )
    if alert.kind == AlertKind.CONNECTION_REQUEST:
        return "Connection Request", f"{p.requester_name} wants to connect to {name}'s watch."
    return alert.kind.value, ""
