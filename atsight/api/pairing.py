"""
Pairing endpoints - PIN registration from the watch, link requests and admin decisions from guardians.

Routes (/pairing):
  POST   /register  - Watch publishes its current PIN
  GET    /check     - Current status of a PIN (polled by the watch)
  POST   /link      - Guardian submits a PIN
  POST   /decide    - Admin guardian approves or rejects a pending request
  GET    /link      - 200 while the guardian is linked to the child, 404 otherwise
  DELETE /link      - Unlink a guardian from a child
"""

import logging
from fastapi import APIRouter, HTTPException, Query, status

from .models import DecideRequest, LinkRequest, RegisterPinRequest
from ..db.models import PairingStatusResponse
from ..services.backend import BackendUnavailable
from ..services.pairing import InvalidPinError, get_pairing_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pairing", tags=["pairing"])


def _unavailable(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Backend unavailable: {e}")


# Used by: watch pairing screen (HttpEventBackend.register_pairing_code)
@router.post("/register")
async def register_pin(request: RegisterPinRequest):
    if not await get_pairing_service().register_pin(request.child_id, request.pin):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register pairing code"
        )
    return {"pin": request.pin, "child_id": request.child_id}


# Used by: watch pairing poller (HttpEventBackend.check_pairing_code)
@router.get("/check", response_model=PairingStatusResponse, response_model_by_alias=False)
async def check_pin(pin: str = Query(..., description="6-digit PIN")):
    try:
        return await get_pairing_service().check_status(pin)
    except BackendUnavailable as e:
        raise _unavailable(e)


# Used by: guardian app - "Add child" PIN entry
@router.post("/link", response_model=PairingStatusResponse, response_model_by_alias=False)
async def link(request: LinkRequest):
    try:
        return await get_pairing_service().submit_pin(
            request.pin,
            request.guardian_id,
            request.guardian_name,
            request.child_name,
        )
    except InvalidPinError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BackendUnavailable as e:
        raise _unavailable(e)


# Used by: guardian app - approve/reject on the connection request alert
@router.post("/decide", response_model=PairingStatusResponse, response_model_by_alias=False)
async def decide(request: DecideRequest):
    try:
        return await get_pairing_service().decide(request.pin, request.admin_guardian_id, request.approve)
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except BackendUnavailable as e:
        raise _unavailable(e)


# Used by: watch link liveness check (HttpEventBackend.check_link)
@router.get("/link")
async def get_link(
    guardian_id: str = Query(..., description="Guardian ID"),
    child_id: str = Query(..., description="Child ID"),
):
    service = get_pairing_service()
    try:
        linked = await service.backend.check_link(guardian_id, child_id)
    except BackendUnavailable as e:
        raise _unavailable(e)
    if not linked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")
    return {"guardian_id": guardian_id, "child_id": child_id, "linked": True}


# Used by: guardian app - "Remove child"
@router.delete("/link")
async def delete_link(
    guardian_id: str = Query(..., description="Guardian ID"),
    child_id: str = Query(..., description="Child ID"),
):
    if not await get_pairing_service().unlink(guardian_id, child_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")
    logger.info(f"Guardian {guardian_id} unlinked from child {child_id}")
    return {"guardian_id": guardian_id, "child_id": child_id, "linked": False}
