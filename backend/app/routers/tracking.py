import asyncio

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.auth import Actor, require_actor
from app.models import LocationReport, LocationReportResult, TrackingStatus
from app.routers.bookings import load_booking_for
from app.routers.errors import raise_service_http_error
from app.services.errors import ServiceError
from app.services.location_tracker import location_tracker

router = APIRouter(prefix="/tracking", tags=["tracking"])
STREAM_KEEPALIVE_SECONDS = 15.0


@router.post("/{booking_id}/location", response_model=LocationReportResult)
def report_location(
    booking_id: str,
    report: LocationReport,
    actor: Actor = Depends(require_actor),
):
    try:
        load_booking_for(booking_id, actor, {"provider"})
        accepted = location_tracker.report_position(
            booking_id,
            report.latitude,
            report.longitude,
            speed=report.speed,
            heading=report.heading,
            accuracy=report.accuracy,
        )
    except ServiceError as exc:
        raise_service_http_error(exc)
    return LocationReportResult(accepted=accepted, booking_id=booking_id)


@router.get("/{booking_id}", response_model=TrackingStatus)
def tracking_status(booking_id: str, actor: Actor = Depends(require_actor)):
    try:
        load_booking_for(booking_id, actor, {"requester", "provider", "admin"})
        return location_tracker.current_status(booking_id)
    except ServiceError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}/stream")
async def tracking_stream(booking_id: str, request: Request, actor: Actor = Depends(require_actor)):
    try:
        load_booking_for(booking_id, actor, {"requester", "provider", "admin"})
        initial = location_tracker.current_status(booking_id)
    except ServiceError as exc:
        raise_service_http_error(exc)

    loop = asyncio.get_running_loop()
    updates: "asyncio.Queue[TrackingStatus]" = asyncio.Queue()
    # Position reports arrive on worker threads.
    subscription = location_tracker.subscribe(
        booking_id,
        lambda status: loop.call_soon_threadsafe(updates.put_nowait, status),
    )

    async def event_generator():
        try:
            yield f"data: {initial.model_dump_json()}\n\n"
            while not await request.is_disconnected():
                try:
                    status = await asyncio.wait_for(updates.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {status.model_dump_json()}\n\n"
                if status.phase == "arrived" or status.booking_status == "cancelled":
                    break
        except asyncio.CancelledError:
            # Client disconnected before the journey finished.
            return
        finally:
            subscription.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
