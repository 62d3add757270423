"""
Watch endpoints - raw readings from the child's watch, monitor lifecycle, SOS and HALT.

Routes (/watch):
  POST /{child_id}/start             - Start monitoring a child (fresh detector state)
  POST /{child_id}/stop              - Stop monitoring; pending timers are cancelled
  GET  /{child_id}/status            - Current monitor state
  POST /{child_id}/heart-rate        - Heart-rate sample
  POST /{child_id}/motion            - Accelerometer magnitude
  POST /{child_id}/battery           - Battery level
  POST /{child_id}/location          - Location fix; evaluates zones
  POST /{child_id}/location/refresh  - One-shot fix from the companion API (with retries)
  POST /{child_id}/off-wrist/evaluate - Run the off-wrist check now
  POST /{child_id}/still-wearing     - Child answered the off-wrist prompt
  POST /{child_id}/sos               - SOS button
  POST /{child_id}/pairing-screen    - Show a fresh pairing PIN
  GET  /{child_id}/halt              - HALT alarm state on the watch
  POST /{child_id}/halt/dismiss      - Dismiss HALT (refused during the grace window)
"""

import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, status

from .models import (
    BatteryReading,
    BatteryResponse,
    DismissResponse,
    HaltStatusResponse,
    HeartRateReading,
    LocationReading,
    LocationResponse,
    MonitorStartRequest,
    MonitorStatusResponse,
    MotionReading,
    OffWristActionResponse,
    PairingScreenResponse,
    ZoneEventResponse,
)
from ..core.clock import from_epoch
from ..services.alert_events import AlertKind
from ..services.alert_service import get_alert_manager
from ..services.backend import BackendUnavailable
from ..services.monitor import ChildMonitor, DEFAULT_CHILD_NAME, get_monitor_registry
from ..services.scheduler import get_sensor_source

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/watch", tags=["watch"])


def _require_monitor(child_id: str) -> ChildMonitor:
    monitor = get_monitor_registry().get(child_id)
    if monitor is None or not monitor.running:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Child {child_id} is not being monitored"
        )
    return monitor


def _timestamp(monitor: ChildMonitor, ts: Optional[float]):
    return from_epoch(ts) if ts is not None else monitor.clock.now()


# Used by: watch app - user signed in on the watch
@router.post("/{child_id}/start", response_model=MonitorStatusResponse)
async def start_monitor(child_id: str, request: Optional[MonitorStartRequest] = None):
    child_name = request.child_name if request else None
    monitor = await get_monitor_registry().start(child_id, child_name)
    return MonitorStatusResponse(**monitor.status())


# Used by: watch app - sign out
@router.post("/{child_id}/stop")
async def stop_monitor(child_id: str):
    stopped = await get_monitor_registry().stop(child_id)
    return {"child_id": child_id, "stopped": stopped}


@router.get("/{child_id}/status", response_model=MonitorStatusResponse)
async def monitor_status(child_id: str):
    monitor = get_monitor_registry().get(child_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Child {child_id} is not being monitored")
    return MonitorStatusResponse(**monitor.status())


@router.post("/{child_id}/heart-rate", response_model=OffWristActionResponse)
async def heart_rate(child_id: str, reading: HeartRateReading):
    monitor = _require_monitor(child_id)
    action = await monitor.on_heart_rate(reading.bpm, _timestamp(monitor, reading.ts))
    return OffWristActionResponse(child_id=child_id, action=action.value)


@router.post("/{child_id}/motion")
async def motion(child_id: str, reading: MotionReading):
    monitor = _require_monitor(child_id)
    moved = await monitor.on_motion(reading.magnitude, _timestamp(monitor, reading.ts))
    return {"child_id": child_id, "moving": moved}


@router.post("/{child_id}/battery", response_model=BatteryResponse)
async def battery(child_id: str, reading: BatteryReading):
    monitor = _require_monitor(child_id)
    if not 0 <= reading.level <= 100:
        raise HTTPException(status_code=400, detail="Battery level must be between 0 and 100")
    emitted = await monitor.on_battery(reading.level)
    return BatteryResponse(child_id=child_id, level=reading.level, alert_emitted=emitted)


def _location_response(child_id: str, events) -> LocationResponse:
    return LocationResponse(
        child_id=child_id,
        events=[
            ZoneEventResponse(
                kind=e.kind.value,
                zone_id=e.zone.id,
                zone_name=e.zone.name,
                distance_m=e.distance_m,
                repeat=e.repeat,
            )
            for e in events
        ],
    )


@router.post("/{child_id}/location", response_model=LocationResponse)
async def location(child_id: str, reading: LocationReading):
    monitor = _require_monitor(child_id)
    events = await monitor.on_location(
        reading.lat, reading.lon, reading.accuracy, _timestamp(monitor, reading.ts)
    )
    return _location_response(child_id, events)


# Used by: guardian app - "refresh location" on the map
@router.post("/{child_id}/location/refresh", response_model=LocationResponse)
async def refresh_location(child_id: str):
    """Resolves with no events when location permission is denied or all retries fail."""
    monitor = _require_monitor(child_id)
    fix = await get_sensor_source().request_location_fix(child_id)
    if not fix or "lat" not in fix or "lon" not in fix:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Location fix unavailable"
        )
    ts = fix.get("ts")
    events = await monitor.on_location(
        float(fix["lat"]),
        float(fix["lon"]),
        float(fix.get("accuracy", 0.0)),
        _timestamp(monitor, float(ts) if ts is not None else None),
    )
    return _location_response(child_id, events)


@router.post("/{child_id}/off-wrist/evaluate", response_model=OffWristActionResponse)
async def evaluate_off_wrist(child_id: str):
    monitor = _require_monitor(child_id)
    action = await monitor.evaluate_off_wrist()
    return OffWristActionResponse(child_id=child_id, action=action.value)


# Used by: watch app - "I'm still wearing it" button on the off-wrist prompt
@router.post("/{child_id}/still-wearing")
async def still_wearing(child_id: str):
    monitor = _require_monitor(child_id)
    confirmed = await monitor.confirm_still_wearing()
    return {"child_id": child_id, "confirmed": confirmed}


# Used by: watch app - SOS button
@router.post("/{child_id}/sos")
async def sos(child_id: str):
    registry = get_monitor_registry()
    monitor = registry.get(child_id)
    if monitor is not None:
        child_name = monitor.child_name
        now = monitor.clock.now()
    else:
        try:
            child_name = await registry.backend.get_child_name(child_id) or DEFAULT_CHILD_NAME
        except BackendUnavailable:
            child_name = DEFAULT_CHILD_NAME
        now = registry.clock.now()

    logger.warning(f"SOS pressed on child {child_id}'s watch")
    results = await get_alert_manager().emit_for_child(child_id, AlertKind.SOS, now, child_name=child_name)
    if not results:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No linked guardians could be notified"
        )
    return {"child_id": child_id, "notified": len(results)}


@router.post("/{child_id}/pairing-screen", response_model=PairingScreenResponse)
async def pairing_screen(child_id: str):
    monitor = _require_monitor(child_id)
    try:
        pin = await monitor.open_pairing_screen()
    except BackendUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return PairingScreenResponse(child_id=child_id, pin=pin)


@router.get("/{child_id}/halt", response_model=HaltStatusResponse)
async def halt_status(child_id: str):
    monitor = _require_monitor(child_id)
    return HaltStatusResponse(
        child_id=child_id,
        active=monitor.halt.is_active,
        can_dismiss=monitor.halt.can_dismiss,
    )


@router.post("/{child_id}/halt/dismiss", response_model=DismissResponse)
async def dismiss_halt(child_id: str):
    monitor = _require_monitor(child_id)
    if monitor.halt.is_active and not monitor.halt.can_dismiss:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="HALT cannot be dismissed yet"
        )
    return DismissResponse(dismissed=await monitor.halt.dismiss())
