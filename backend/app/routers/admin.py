from fastapi import APIRouter, Depends, HTTPException

from app.auth import Actor, require_admin
from app.models import AccountProfile, AdminFlagRequest, ApprovalOutcome, Booking, ProviderDecisionRequest
from app.routers.errors import raise_service_http_error
from app.services.approval_coordinator import approval_coordinator
from app.services.booking_manager import booking_manager
from app.services.errors import ServiceError

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/profiles", response_model=list[AccountProfile])
def list_profiles(_admin: Actor = Depends(require_admin)):
    try:
        return approval_coordinator.accounts_view()
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/profiles/{user_id}/decision", response_model=ApprovalOutcome)
async def decide_application(
    user_id: str,
    request: ProviderDecisionRequest,
    _admin: Actor = Depends(require_admin),
):
    try:
        return await approval_coordinator.decide(user_id, request.decision)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/profiles/{user_id}/revoke", response_model=ApprovalOutcome)
async def revoke_provider(user_id: str, _admin: Actor = Depends(require_admin)):
    try:
        return await approval_coordinator.revoke(user_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/profiles/{user_id}/admin", response_model=AccountProfile)
async def set_admin_flag(
    user_id: str,
    request: AdminFlagRequest,
    admin: Actor = Depends(require_admin),
):
    if user_id == admin.user_id and not request.is_admin:
        raise HTTPException(status_code=400, detail="Administrators cannot remove their own admin access")
    try:
        return await approval_coordinator.set_admin(user_id, request.is_admin)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/bookings", response_model=list[Booking])
def list_all_bookings(_admin: Actor = Depends(require_admin)):
    try:
        return booking_manager.all_bookings_view()
    except ServiceError as exc:
        raise_service_http_error(exc)
