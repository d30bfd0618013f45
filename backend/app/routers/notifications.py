from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import Actor, require_actor
from app.models import DeviceTokenRegisterRequest, NotificationRecord
from app.services.notification_store import notification_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    unread_only: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
):
    return notification_store.list_for_user(user_id=actor.user_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    actor: Actor = Depends(require_actor),
):
    notification_store.register_device_token(user_id=actor.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(require_actor),
):
    updated = notification_store.mark_read(user_id=actor.user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
