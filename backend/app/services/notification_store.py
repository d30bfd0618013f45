import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from app.models import NotificationPayload, NotificationRecord
from app.services.push_sender import PushMessage, PushSender, push_sender

logger = logging.getLogger(__name__)

CATEGORY_BY_TYPE = {
    "booking_confirmation": "booking",
    "provider_application_status": "application",
    "donation_receipt": "donation",
    "contact_acknowledgment": "contact",
}


def _render(payload: NotificationPayload) -> Tuple[str, str, Optional[str]]:
    data: Dict[str, Any] = payload.data
    if payload.type == "booking_confirmation":
        body = f"{data.get('purpose', 'Your booking')} on {data.get('scheduled_at', 'the scheduled date')}"
        return "Booking confirmed", body, f"booking:{data['booking_id']}" if data.get("booking_id") else None
    if payload.type == "provider_application_status":
        status = str(data.get("status", "updated"))
        return "Priest application update", f"Your priest application was {status}.", "profile:provider"
    if payload.type == "donation_receipt":
        return "Donation received", f"Thank you for your donation of {data.get('amount', '')}".strip() + ".", None
    return "We received your message", "Our team will get back to you shortly.", None


class NotificationStore:
    """In-app notifications plus best-effort push; the notification collaborator."""

    def __init__(self, sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._sender = sender or push_sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        invalid_tokens = self._sender.send(
            tokens,
            PushMessage(
                title=title,
                body=body,
                data={"notification_id": record.id, "category": category, "deep_link": deep_link or ""},
            ),
        )
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def dispatch(self, payload: NotificationPayload) -> Optional[NotificationRecord]:
        """Fire-and-forget delivery of a {type, recipient, data} payload. Never raises."""
        try:
            title, body, deep_link = _render(payload)
            return self.create(
                user_id=payload.recipient,
                title=title,
                body=body,
                category=CATEGORY_BY_TYPE.get(payload.type, "system"),
                deep_link=deep_link,
            )
        except Exception:
            logger.exception("Notification %s to %s dropped", payload.type, payload.recipient)
            return None

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
