"""Pydantic request/response models for all API endpoints."""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional

from atsight.core.constants import PAIRING_PIN_LENGTH


# Watch ingest models

class HeartRateReading(BaseModel):
    bpm: float
    ts: Optional[float] = None  # epoch seconds; defaults to receive time


class MotionReading(BaseModel):
    magnitude: float  # |acceleration| in g
    ts: Optional[float] = None


class BatteryReading(BaseModel):
    level: int


class LocationReading(BaseModel):
    lat: float
    lon: float
    accuracy: float
    ts: Optional[float] = None


class MonitorStartRequest(BaseModel):
    child_name: Optional[str] = None


class MonitorStatusResponse(BaseModel):
    child_id: str
    child_name: str
    running: bool
    generation: int
    is_likely_off_wrist: bool
    prompt_pending: bool
    battery_percent: Optional[int] = None
    halt_active: bool
    halt_can_dismiss: bool
    pairing_status: str
    pairing_dismissed: bool = False
    pairing_pin: Optional[str] = None
    reconnecting: bool
    guardians: List[str]


class OffWristActionResponse(BaseModel):
    child_id: str
    action: str


class BatteryResponse(BaseModel):
    child_id: str
    level: int
    alert_emitted: bool


class ZoneEventResponse(BaseModel):
    kind: str
    zone_id: str
    zone_name: str
    distance_m: float
    repeat: bool = False


class LocationResponse(BaseModel):
    child_id: str
    events: List[ZoneEventResponse]


class PairingScreenResponse(BaseModel):
    child_id: str
    pin: str


class HaltStatusResponse(BaseModel):
    child_id: str
    active: bool
    can_dismiss: bool


class DismissResponse(BaseModel):
    dismissed: bool


# Alert models

class AlertResponse(BaseModel):
    id: Optional[str]
    kind: str
    child_id: str
    guardian_id: str
    ts: float
    payload: Dict[str, Any]
    processed: bool


class AlertListResponse(BaseModel):
    alerts: List[AlertResponse]
    total_count: int


class AcknowledgeRequest(BaseModel):
    child_id: str
    guardian_id: str
    alert_id: Optional[str] = None


class HaltRequest(BaseModel):
    guardian_id: str
    child_id: str


class WatermarkBody(BaseModel):
    ts: Optional[float] = None


class PushSubscriptionRequest(BaseModel):
    endpoint: str
    keys: dict  # p256dh + auth


class PushSubscriptionResponse(BaseModel):
    success: bool
    message: str


class VapidKeyResponse(BaseModel):
    public_key: Optional[str]
    configured: bool


# Pairing models

class RegisterPinRequest(BaseModel):
    pin: str
    child_id: str

    @field_validator("pin")
    @classmethod
    def six_digits(cls, v: str) -> str:
        v = v.strip()
        if len(v) != PAIRING_PIN_LENGTH or not v.isdigit():
            raise ValueError(f"PIN must be {PAIRING_PIN_LENGTH} digits")
        return v


class LinkRequest(BaseModel):
    pin: str
    guardian_id: str
    guardian_name: str = "Parent"
    child_name: Optional[str] = None


class DecideRequest(BaseModel):
    pin: str
    admin_guardian_id: str
    approve: bool


# Child configuration models

class ZoneModel(BaseModel):
    id: str
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)
    radius_meters: float = Field(..., ge=0.0)
    name: str
    is_safe: bool


class ChildResponse(BaseModel):
    child_id: str
    name: Optional[str] = None


class ChildNameRequest(BaseModel):
    name: str
