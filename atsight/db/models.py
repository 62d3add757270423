"""Pydantic models mirroring the AtSight storage schema and backend wire contract."""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, Literal

from atsight.core.constants import (
    DEFAULT_NOTIFICATION_SOUND,
    LOW_BATTERY_DEFAULT_THRESHOLD_PCT,
    LOW_BATTERY_MAX_THRESHOLD_PCT,
    LOW_BATTERY_MIN_THRESHOLD_PCT,
    NOTIFICATION_SOUNDS,
)


# Used by: alert_service.py (preference gating), battery.py (threshold), event_store.py, api/children.py
class NotificationSettings(BaseModel):
    safe_zone_alert: bool = Field(True, alias="safeZoneAlert")
    unsafe_zone_alert: bool = Field(True, alias="unsafeZoneAlert")
    low_battery_alert: bool = Field(True, alias="lowBatteryAlert")
    watch_removed_alert: bool = Field(True, alias="watchRemovedAlert")
    new_connection_request: bool = Field(True, alias="newConnectionRequest")
    sound: str = DEFAULT_NOTIFICATION_SOUND
    low_battery_threshold: int = Field(LOW_BATTERY_DEFAULT_THRESHOLD_PCT, alias="lowBatteryThreshold")

    class Config:
        from_attributes = True
        populate_by_name = True

    @field_validator("sound")
    @classmethod
    def known_sound(cls, v: str) -> str:
        return v if v in NOTIFICATION_SOUNDS else DEFAULT_NOTIFICATION_SOUND

    @field_validator("low_battery_threshold")
    @classmethod
    def clamp_threshold(cls, v: int) -> int:
        # Slider range on the guardian app
        return max(LOW_BATTERY_MIN_THRESHOLD_PCT, min(LOW_BATTERY_MAX_THRESHOLD_PCT, v))


PairingStatus = Literal["not_found", "waiting_for_approval", "rejected", "linked"]


# Used by: pairing.py, event_store.py, backend_client.py, api/pairing.py
class PairingStatusResponse(BaseModel):
    status: PairingStatus
    guardian_id: Optional[str] = Field(None, alias="guardianId")
    child_id: Optional[str] = Field(None, alias="childId")
    child_name: Optional[str] = Field(None, alias="childName")
    parent_name: Optional[str] = Field(None, alias="parentName")

    class Config:
        populate_by_name = True


# Used by: event_store.py, pairing.py
class PairingCode(BaseModel):
    pin: str
    guardian_id: Optional[str] = None
    child_id: Optional[str] = None
    child_name: Optional[str] = None
    parent_name: Optional[str] = None
    admin_id: Optional[str] = None
    admin_child_id: Optional[str] = None
    approval_status: str = ""
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Used by: event_store.py, api/pairing.py
class GuardianLink(BaseModel):
    guardian_id: str
    child_id: str
    guardian_name: str = "Parent"
    is_admin: bool = False
    linked_at: Optional[datetime] = None

    class Config:
        from_attributes = True
