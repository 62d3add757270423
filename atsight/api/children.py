"""
Child configuration endpoints - zones, notification settings, linked guardians.

Routes (/children):
  GET /{child_id}            - Child record (display name)
  PUT /{child_id}/name       - Rename the child
  GET /{child_id}/zones      - Zones in evaluation order
  PUT /{child_id}/zones      - Replace all zones
  GET /{child_id}/settings   - Notification settings (defaults when none saved)
  PUT /{child_id}/settings   - Save notification settings
  GET /{child_id}/guardians  - Linked guardians, oldest link first
"""

import logging
from typing import List
from fastapi import APIRouter, HTTPException, status

from .models import ChildNameRequest, ChildResponse, ZoneModel
from ..db.models import GuardianLink, NotificationSettings
from ..services.backend import BackendUnavailable
from ..services.event_store import get_event_store
from ..services.signal_ingest import LatLon
from ..services.zones import Zone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/children", tags=["children"])


# Used by: HttpEventBackend.get_child_name
@router.get("/{child_id}", response_model=ChildResponse)
async def get_child(child_id: str):
    name = await get_event_store().get_child_name(child_id)
    if name is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Child {child_id} not found")
    return ChildResponse(child_id=child_id, name=name)


@router.put("/{child_id}/name", response_model=ChildResponse)
async def rename_child(child_id: str, request: ChildNameRequest):
    name = request.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name must not be empty")
    if not await get_event_store().set_child_name(child_id, name):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save name")
    return ChildResponse(child_id=child_id, name=name)


# Used by: guardian app map screen, HttpEventBackend.get_zones
@router.get("/{child_id}/zones", response_model=List[ZoneModel])
async def get_zones(child_id: str):
    try:
        zones = await get_event_store().get_zones(child_id)
    except BackendUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [
        ZoneModel(
            id=z.id,
            lat=z.center.lat,
            lon=z.center.lon,
            radius_meters=z.radius_meters,
            name=z.name,
            is_safe=z.is_safe,
        )
        for z in zones
    ]


@router.put("/{child_id}/zones", response_model=List[ZoneModel])
async def replace_zones(child_id: str, zones: List[ZoneModel]):
    ids = [z.id for z in zones]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Zone ids must be unique")

    converted = [
        Zone(
            id=z.id,
            center=LatLon(z.lat, z.lon),
            radius_meters=z.radius_meters,
            name=z.name,
            is_safe=z.is_safe,
        )
        for z in zones
    ]
    if not await get_event_store().replace_zones(child_id, converted):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save zones")
    return zones


# Used by: guardian app settings screen, HttpEventBackend.get_notification_settings
@router.get("/{child_id}/settings", response_model=NotificationSettings)
async def get_settings(child_id: str):
    try:
        return await get_event_store().get_notification_settings(child_id)
    except BackendUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.put("/{child_id}/settings", response_model=NotificationSettings)
async def save_settings(child_id: str, prefs: NotificationSettings):
    if not await get_event_store().save_notification_settings(child_id, prefs):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save settings")
    return prefs


# Used by: HttpEventBackend.get_linked_guardians
@router.get("/{child_id}/guardians", response_model=List[GuardianLink])
async def get_guardians(child_id: str):
    try:
        return await get_event_store().get_linked_guardians(child_id)
    except BackendUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
