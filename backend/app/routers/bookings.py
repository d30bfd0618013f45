from typing import Set

from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import Actor, require_actor
from app.models import (
    Booking,
    BookingPaymentRequest,
    BookingRequest,
    BookingTransitionRequest,
    JourneyStartRequest,
    Review,
    ReviewRequest,
)
from app.routers.errors import raise_service_http_error
from app.services.booking_manager import booking_manager
from app.services.errors import ServiceError
from app.services.seva_store import seva_store

router = APIRouter(prefix="/bookings", tags=["bookings"])

# Which parties may move a booking into each status. Requesters confirm through /payment.
TRANSITION_ROLES = {
    "confirmed": {"provider", "admin"},
    "cancelled": {"requester", "provider", "admin"},
    "completed": {"provider", "admin"},
}


def booking_roles(booking: Booking, actor: Actor) -> Set[str]:
    roles: Set[str] = set()
    if actor.is_admin:
        roles.add("admin")
    if booking.requester_id == actor.user_id:
        roles.add("requester")
    provider = seva_store.get_provider_profile(booking.provider_id)
    if provider and provider.user_id == actor.user_id:
        roles.add("provider")
    return roles


def load_booking_for(booking_id: str, actor: Actor, allowed: Set[str]) -> Booking:
    booking = booking_manager.get(booking_id)
    if not booking_roles(booking, actor) & allowed:
        raise HTTPException(status_code=403, detail="Not allowed for this booking")
    return booking


@router.post("", response_model=Booking)
async def create_booking(request: BookingRequest, actor: Actor = Depends(require_actor)):
    try:
        return await booking_manager.create(
            requester_id=actor.user_id,
            provider_id=request.provider_id,
            scheduled_at=request.scheduled_at,
            purpose=request.purpose,
            address=request.address,
            price=request.price,
            notes=request.notes,
            payment_reference=request.payment_reference,
        )
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("", response_model=list[Booking])
def list_bookings(
    role: str = Query(default="all"),
    actor: Actor = Depends(require_actor),
):
    try:
        return booking_manager.bookings_view(actor.user_id, role)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        return load_booking_for(booking_id, actor, {"requester", "provider", "admin"})
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/transition", response_model=Booking)
async def transition_booking(
    booking_id: str,
    request: BookingTransitionRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        load_booking_for(booking_id, actor, TRANSITION_ROLES.get(request.status, {"admin"}))
        return await booking_manager.transition(booking_id, request.status, expected_version=request.expected_version)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/confirm", response_model=Booking)
async def confirm_booking(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        load_booking_for(booking_id, actor, TRANSITION_ROLES["confirmed"])
        return await booking_manager.confirm(booking_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=Booking)
async def cancel_booking(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        load_booking_for(booking_id, actor, TRANSITION_ROLES["cancelled"])
        return await booking_manager.cancel(booking_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/complete", response_model=Booking)
async def complete_booking(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        load_booking_for(booking_id, actor, TRANSITION_ROLES["completed"])
        return await booking_manager.complete(booking_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/payment", response_model=Booking)
async def record_payment(
    booking_id: str,
    request: BookingPaymentRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        load_booking_for(booking_id, actor, {"requester", "admin"})
        return await booking_manager.record_payment(booking_id, request.outcome, request.payment_reference)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/journey/start", response_model=Booking)
async def start_journey(
    booking_id: str,
    request: JourneyStartRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        load_booking_for(booking_id, actor, {"provider"})
        return await booking_manager.start_journey(booking_id, request.estimated_arrival)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/review", response_model=Review)
async def review_booking(
    booking_id: str,
    request: ReviewRequest,
    actor: Actor = Depends(require_actor),
):
    try:
        load_booking_for(booking_id, actor, {"requester"})
        return await booking_manager.submit_review(booking_id, actor.user_id, request.rating, request.comment)
    except ServiceError as exc:
        raise_service_http_error(exc)
