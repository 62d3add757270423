"""
Alerts API - real-time SSE stream, alert feed for remote subscribers, SOS/HALT and push subscription.

Routes (/alerts):
  GET    /stream                    - SSE stream for a guardian; also arms the guardian's SOS alarm
  GET    /history                   - Paginated alert history (newest first)
  GET    /feed                      - Raw alert documents after a timestamp (oldest first)
  POST   /                          - Store an alert document as-is
  POST   /{alert_id}/processed      - Mark an alert processed
  POST   /acknowledge               - Guardian tapped OK on "watch removed"
  GET    /sos                       - Guardian's SOS alarm state
  POST   /sos/dismiss               - Stop the SOS alarm
  POST   /halt                      - Send HALT to a child's watch
  GET    /halt/status               - Newest HALT for a child after a timestamp
  GET    /watermarks/{subscriber_id} - Persisted "last processed" timestamp
  PUT    /watermarks/{subscriber_id} - Advance the persisted timestamp (never moves back)

Routes (/push):
  GET    /vapid-key    - VAPID public key for client subscription
  POST   /subscribe    - Save push subscription
  POST   /unsubscribe  - Remove push subscription
  GET    /status       - Check if a recipient has an active push subscription
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from .models import (
    AcknowledgeRequest,
    AlertListResponse,
    AlertResponse,
    DismissResponse,
    HaltRequest,
    PushSubscriptionRequest,
    PushSubscriptionResponse,
    VapidKeyResponse,
    WatermarkBody,
)
from ..core.clock import from_epoch, to_epoch
from ..core.constants import ALERTS_DEFAULT_PAGE_SIZE, SSE_KEEPALIVE_SECONDS
from ..services.alert_events import Alert, AlertValidationError, parse_alert_document
from ..services.alert_service import get_alert_manager, get_sse_manager
from ..services.emergency import get_emergency_registry, send_halt
from ..services.event_store import get_event_store
from ..services.push_service import get_push_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _to_response(alert: Alert) -> AlertResponse:
    doc = alert.to_dict()
    return AlertResponse(**doc)


# Used by: guardian app - real-time SSE alert stream
@router.get("/stream")
async def alerts_stream(guardian_id: str = Query(..., description="Guardian ID to subscribe for")):
    sse_manager = get_sse_manager()
    queue = await sse_manager.subscribe(guardian_id)
    await get_emergency_registry().watch_guardian(guardian_id)

    async def event_generator():
        try:
            yield f"event: connected\ndata: {{}}\n\n"

            while True:
                try:
                    alert = await asyncio.wait_for(queue.get(), timeout=float(SSE_KEEPALIVE_SECONDS))
                    yield f"data: {json.dumps(alert.to_dict())}\n\n"
                except asyncio.TimeoutError:
                    yield f": keepalive\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            await sse_manager.unsubscribe(guardian_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # disable nginx buffering
        }
    )


# Used by: guardian app - notifications list
@router.get("/history", response_model=AlertListResponse)
async def get_alerts_history(
    guardian_id: str = Query(..., description="Guardian ID"),
    child_id: Optional[str] = Query(None, description="Only alerts about this child"),
    limit: int = Query(ALERTS_DEFAULT_PAGE_SIZE, ge=1, le=100, description="Maximum alerts to return"),
    offset: int = Query(0, ge=0, description="Number of alerts to skip"),
):
    store = get_event_store()
    alerts = await store.list_alerts(
        guardian_id=guardian_id,
        limit=limit,
        offset=offset,
        child_id=child_id,
    )
    return AlertListResponse(
        alerts=[_to_response(a) for a in alerts],
        total_count=await store.count_alerts(guardian_id, child_id=child_id),
    )


# Used by: HttpEventBackend.fetch_alerts (remote subscriptions)
@router.get("/feed")
async def get_alerts_feed(
    since: Optional[float] = Query(None, description="Only alerts strictly after this epoch timestamp"),
    guardian_id: Optional[str] = Query(None),
    child_id: Optional[str] = Query(None),
    kinds: Optional[str] = Query(None, description="Comma-separated alert kinds"),
) -> List[Dict[str, Any]]:
    kind_list = [k.strip() for k in kinds.split(",") if k.strip()] if kinds else None
    return await get_event_store().fetch_alerts(
        since=from_epoch(since) if since is not None else None,
        guardian_id=guardian_id,
        child_id=child_id,
        kinds=kind_list,
    )


# Used by: HttpEventBackend.post_alert
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_alert(document: Dict[str, Any] = Body(...)):
    try:
        alert = parse_alert_document(document)
    except AlertValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if alert.id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Alert id is required")

    if not await get_event_store().post_alert(alert):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store alert"
        )
    return {"id": alert.id}


@router.post("/{alert_id}/processed")
async def mark_alert_processed(
    alert_id: str,
    guardian_id: str = Query(..., description="Guardian ID"),
):
    if not await get_event_store().mark_alert_processed(alert_id, guardian_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found or doesn't belong to guardian"
        )
    return {"success": True}


# Used by: guardian app - OK button on the "watch removed" alert
@router.post("/acknowledge")
async def acknowledge_alert(request: AcknowledgeRequest):
    marked = await get_alert_manager().acknowledge(request.child_id, request.guardian_id, request.alert_id)
    return {"acknowledged": True, "marked_processed": marked}


@router.get("/sos")
async def sos_status(guardian_id: str = Query(..., description="Guardian ID")):
    alarm = get_emergency_registry().get_alarm(guardian_id)
    if alarm is None or not alarm.is_active:
        return {"active": False, "alert": None}
    return {"active": True, "alert": alarm.current.to_dict() if alarm.current else None}


# Used by: guardian app - "Dismiss" on the SOS overlay
@router.post("/sos/dismiss", response_model=DismissResponse)
async def dismiss_sos(guardian_id: str = Query(..., description="Guardian ID")):
    alarm = get_emergency_registry().get_alarm(guardian_id)
    if alarm is None:
        return DismissResponse(dismissed=False)

    current = alarm.current
    dismissed = await alarm.dismiss()
    if dismissed and current is not None and current.id is not None:
        await get_event_store().mark_alert_processed(current.id, guardian_id)
    return DismissResponse(dismissed=dismissed)


# Used by: guardian app - HALT button on the child's page
@router.post("/halt")
async def halt(request: HaltRequest):
    store = get_event_store()
    child_name = await store.get_child_name(request.child_id)
    alert = await send_halt(store, request.guardian_id, request.child_id, child_name)
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send HALT"
        )
    return {"id": alert.id, "ts": to_epoch(alert.timestamp)}


# Used by: watch app - polls for HALT commands newer than the last one it handled
@router.get("/halt/status")
async def halt_status(
    child_id: str = Query(..., description="Child ID"),
    since: Optional[float] = Query(None, description="Last HALT timestamp the watch handled"),
):
    docs = await get_event_store().fetch_alerts(
        since=from_epoch(since) if since is not None else None,
        child_id=child_id,
        kinds=["halt"],
    )
    latest = docs[-1] if docs else None
    return {
        "child_id": child_id,
        "pending": latest is not None,
        "ts": latest["ts"] if latest else since,
        "alert": latest,
    }


@router.get("/watermarks/{subscriber_id}", response_model=WatermarkBody)
async def get_watermark(subscriber_id: str):
    ts = await get_event_store().get_watermark(subscriber_id)
    return WatermarkBody(ts=to_epoch(ts) if ts else None)


@router.put("/watermarks/{subscriber_id}", response_model=WatermarkBody)
async def put_watermark(subscriber_id: str, body: WatermarkBody):
    if body.ts is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ts is required")
    store = get_event_store()
    if not await store.update_watermark(subscriber_id, from_epoch(body.ts)):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update watermark"
        )
    ts = await store.get_watermark(subscriber_id)
    return WatermarkBody(ts=to_epoch(ts) if ts else None)


push_router = APIRouter(prefix="/push", tags=["push-notifications"])


# Used by: guardian and watch apps - VAPID key for push subscription
@push_router.get("/vapid-key", response_model=VapidKeyResponse)
async def get_vapid_public_key():
    push_service = get_push_service()
    return VapidKeyResponse(
        public_key=push_service.public_key,
        configured=push_service.is_configured
    )


@push_router.post("/subscribe", response_model=PushSubscriptionResponse)
async def subscribe_to_push(
    request: PushSubscriptionRequest,
    recipient_id: str = Query(..., description="Guardian or child ID")
):
    push_service = get_push_service()

    if not push_service.is_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications are not configured on this server"
        )

    p256dh_key = request.keys.get("p256dh")
    auth_key = request.keys.get("auth")

    if not p256dh_key or not auth_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid subscription: missing p256dh or auth keys"
        )

    success = await push_service.save_subscription(
        recipient_id=recipient_id,
        endpoint=request.endpoint,
        p256dh_key=p256dh_key,
        auth_key=auth_key
    )

    if not success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save push subscription"
        )

    return PushSubscriptionResponse(
        success=True,
        message="Successfully subscribed to push notifications"
    )


@push_router.post("/unsubscribe", response_model=PushSubscriptionResponse)
async def unsubscribe_from_push(
    recipient_id: str = Query(..., description="Guardian or child ID")
):
    push_service = get_push_service()
    success = await push_service.remove_subscription(recipient_id)

    return PushSubscriptionResponse(
        success=True,
        message="Successfully unsubscribed from push notifications" if success else "No subscription found"
    )


@push_router.get("/status")
async def get_push_status(
    recipient_id: str = Query(..., description="Guardian or child ID")
):
    push_service = get_push_service()
    has_subscription = await push_service.has_subscription(recipient_id)

    return {
        "subscribed": has_subscription,
        "push_configured": push_service.is_configured
    }
