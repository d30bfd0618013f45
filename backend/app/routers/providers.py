from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.auth import Actor, require_actor
from app.models import AccountProfile, ProviderProfile, ProviderProfileUpdateRequest, Review
from app.routers.errors import raise_service_http_error
from app.services.approval_coordinator import approval_coordinator
from app.services.booking_manager import booking_manager
from app.services.errors import ServiceError
from app.services.seva_store import seva_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=list[ProviderProfile])
def list_providers():
    try:
        return approval_coordinator.listed_providers_view()
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/me", response_model=Optional[ProviderProfile])
def my_provider_profile(actor: Actor = Depends(require_actor)):
    try:
        return approval_coordinator.provider_profile_view(actor.user_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/me/account", response_model=AccountProfile)
def my_account(actor: Actor = Depends(require_actor)):
    try:
        return approval_coordinator.account_view(actor.user_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/apply", response_model=AccountProfile)
async def apply_as_provider(actor: Actor = Depends(require_actor)):
    try:
        return await approval_coordinator.apply(actor.user_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/me/update", response_model=ProviderProfile)
async def update_my_provider_profile(
    request: ProviderProfileUpdateRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        return await approval_coordinator.update_own_provider_profile(actor.user_id, **request.model_dump())
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/{profile_id}", response_model=ProviderProfile)
def get_provider(profile_id: str):
    try:
        profile = seva_store.get_provider_profile(profile_id)
    except ServiceError as exc:
        raise_service_http_error(exc)
    if not profile:
        raise HTTPException(status_code=404, detail="Provider not found")
    return profile


@router.get("/{profile_id}/reviews", response_model=list[Review])
def provider_reviews(profile_id: str):
    try:
        return booking_manager.reviews_view(profile_id)
    except ServiceError as exc:
        raise_service_http_error(exc)
