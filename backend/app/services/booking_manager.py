import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from app.models import Booking, NotificationPayload, Review
from app.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.services.notification_store import NotificationStore, notification_store
from app.services.seva_store import SevaStore, parse_iso_datetime, seva_store
from app.services.synchronizer import ConsistencySynchronizer, synchronizer

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
}
TERMINAL_STATUSES = {"completed", "cancelled"}
BOOKING_LIST_ROLES = {"all", "requester", "provider"}
REVIEW_RATINGS = range(1, 6)


def _int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


JOURNEY_DEFAULT_ETA_MINUTES = _int_env("JOURNEY_DEFAULT_ETA_MINUTES", 30)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BookingLifecycleManager:
    """Owns the booking state machine.

    pending -> confirmed | cancelled, confirmed -> completed | cancelled. A priced
    booking confirms only with a payment reference. Writes are
    conditional on the booking version, so a stale writer gets ConflictError and
    changes nothing. Every successful write dispatches a sync run for booking views.
    """

    def __init__(
        self,
        store: SevaStore,
        sync: ConsistencySynchronizer,
        notifications: NotificationStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.sync = sync
        self.notifications = notifications
        self.clock = clock

    def get(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    async def create(
        self,
        *,
        requester_id: str,
        provider_id: str,
        scheduled_at: str,
        purpose: str,
        address: str,
        price: float = 0,
        notes: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> Booking:
        if not purpose.strip():
            raise ValidationError("Purpose is required")
        if not address.strip():
            raise ValidationError("Address is required")
        if price < 0:
            raise ValidationError("Price cannot be negative")
        schedule = parse_iso_datetime(scheduled_at, field="scheduled_at")
        if schedule <= self.clock():
            raise ValidationError("Booking schedule must be in the future")

        provider = self.store.get_provider_profile(provider_id)
        if not provider:
            raise NotFoundError("Provider not found")
        account = self.store.get_account(provider.user_id)
        if provider.approval_status != "approved" or not account or not account.is_provider:
            raise ValidationError("Provider is not accepting bookings")

        now = self.clock().isoformat()
        reference = (payment_reference or "").strip() or None
        booking = Booking(
            id=f"bk_{uuid4().hex[:10]}",
            requester_id=requester_id,
            provider_id=provider_id,
            scheduled_at=schedule.isoformat(),
            purpose=purpose.strip(),
            address=address.strip(),
            notes=(notes or "").strip() or None,
            price=float(price),
            status="confirmed" if reference else "pending",
            payment_reference=reference,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_booking(booking)
        logger.info("Booking %s created for %s with status %s", booking.id, requester_id, booking.status)

        await self._dispatch_sync(booking, booking.status)
        if booking.status == "confirmed":
            self._notify_confirmed(booking)
        return booking

    async def transition(
        self,
        booking_id: str,
        target_status: str,
        expected_version: Optional[int] = None,
        payment_reference: Optional[str] = None,
    ) -> Booking:
        booking = self.get(booking_id)
        if expected_version is not None and expected_version != booking.version:
            raise ConflictError(
                f"Booking changed since version {expected_version} (now {booking.version}, status {booking.status})"
            )
        if booking.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Booking is already {booking.status}")
        if target_status not in ALLOWED_TRANSITIONS.get(booking.status, set()):
            raise InvalidTransitionError(f"Invalid status transition: {booking.status} -> {target_status}")
        reference = (payment_reference or "").strip() or booking.payment_reference
        if target_status == "confirmed" and booking.price > 0 and not reference:
            raise InvalidTransitionError("A priced booking is confirmed by a successful payment")

        fields: Dict[str, object] = {"status": target_status}
        if booking.status == "confirmed":
            fields["journey_started"] = False
            fields["estimated_arrival"] = None
        if reference != booking.payment_reference:
            fields["payment_reference"] = reference

        updated = self.store.update_booking_if_version(booking_id, booking.version, **fields)
        if updated is None:
            raise ConflictError("Booking was modified concurrently; refetch and retry")
        logger.info("Booking %s: %s -> %s", booking_id, booking.status, target_status)

        await self._dispatch_sync(updated, target_status)
        if target_status == "confirmed":
            self._notify_confirmed(updated)
        return updated

    async def confirm(
        self,
        booking_id: str,
        payment_reference: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Booking:
        return await self.transition(
            booking_id, "confirmed", expected_version=expected_version, payment_reference=payment_reference
        )

    async def cancel(self, booking_id: str, expected_version: Optional[int] = None) -> Booking:
        return await self.transition(booking_id, "cancelled", expected_version=expected_version)

    async def complete(self, booking_id: str, expected_version: Optional[int] = None) -> Booking:
        return await self.transition(booking_id, "completed", expected_version=expected_version)

    async def start_journey(self, booking_id: str, estimated_arrival: Optional[str] = None) -> Booking:
        booking = self.get(booking_id)
        if booking.status != "confirmed":
            raise InvalidTransitionError("Journey can only start for a confirmed booking")
        if booking.journey_started:
            return booking

        if estimated_arrival:
            eta = parse_iso_datetime(estimated_arrival, field="estimated_arrival")
        else:
            eta = self.clock() + timedelta(minutes=JOURNEY_DEFAULT_ETA_MINUTES)
        updated = self.store.update_booking_if_version(
            booking_id,
            booking.version,
            journey_started=True,
            estimated_arrival=eta.isoformat(),
        )
        if updated is None:
            raise ConflictError("Booking was modified concurrently; refetch and retry")
        logger.info("Booking %s: journey started, eta %s", booking_id, updated.estimated_arrival)

        await self._dispatch_sync(updated, "confirmed", journey_started=True)
        return updated

    async def record_payment(
        self,
        booking_id: str,
        outcome: str,
        payment_reference: Optional[str] = None,
    ) -> Booking:
        """Outcome of the external payment step; the manager never sees payment internals."""
        booking = self.get(booking_id)
        if outcome != "succeeded":
            logger.info("Booking %s: payment %s, booking stays %s", booking_id, outcome, booking.status)
            return booking
        reference = (payment_reference or "").strip()
        if not reference:
            raise ValidationError("payment_reference is required for a successful payment")
        if booking.status == "confirmed" and booking.payment_reference == reference:
            return booking
        return await self.confirm(booking_id, payment_reference=reference)

    async def submit_review(
        self,
        booking_id: str,
        reviewer_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Review:
        """One review per completed booking, by its requester; refreshes the provider's average rating."""
        if rating not in REVIEW_RATINGS:
            raise ValidationError("Rating must be between 1 and 5")
        booking = self.get(booking_id)
        if booking.requester_id != reviewer_id:
            raise PermissionDeniedError("Only the requester can review this booking")
        if booking.status != "completed":
            raise InvalidTransitionError("Only completed bookings can be reviewed")

        review = Review(
            id=f"rv_{uuid4().hex[:10]}",
            booking_id=booking_id,
            provider_id=booking.provider_id,
            reviewer_id=reviewer_id,
            rating=rating,
            comment=(comment or "").strip() or None,
            created_at=self.clock().isoformat(),
        )
        average = self.store.insert_review(review)
        logger.info("Booking %s reviewed (%d); provider %s now rated %.2f", booking_id, rating, booking.provider_id, average)

        provider = self.store.get_provider_profile(booking.provider_id)
        scopes: List[Tuple[str, ...]] = [("providers",), ("reviews", booking.provider_id)]
        if provider:
            scopes.append(("provider_profile", provider.user_id))
        await self.sync.converge(label=f"review:{booking_id}", scopes=scopes)
        return review

    def reviews_view(self, provider_id: str) -> List[Review]:
        return self.sync.cache.read(("reviews", provider_id), lambda: self.store.list_reviews(provider_id))

    def list_for(self, user_id: str, role: str = "all") -> List[Booking]:
        normalized_role = (role or "all").strip().lower()
        if normalized_role not in BOOKING_LIST_ROLES:
            raise ValidationError("Invalid role value. Allowed: all, requester, provider")
        provider = self.store.get_provider_profile_for_user(user_id)
        if normalized_role == "requester":
            return self.store.list_bookings(requester_id=user_id)
        if normalized_role == "provider":
            return self.store.list_bookings(provider_id=provider.id) if provider else []
        return self.store.list_bookings(requester_id=user_id, provider_id=provider.id if provider else None)

    def bookings_view(self, user_id: str, role: str = "all") -> List[Booking]:
        return self.sync.cache.read(("bookings", role, user_id), lambda: self.list_for(user_id, role))

    def all_bookings_view(self) -> List[Booking]:
        return self.sync.cache.read(("bookings", "admin"), self.store.list_bookings)

    def _verify(self, booking_id: str, expected_status: str, journey_started: Optional[bool]) -> List[str]:
        stored = self.store.get_booking(booking_id)
        if stored is None:
            return [f"booking {booking_id} missing"]
        mismatches: List[str] = []
        if stored.status != expected_status:
            mismatches.append(f"status is {stored.status}, expected {expected_status}")
        if stored.journey_started and stored.status != "confirmed":
            mismatches.append(f"journey_started set while {stored.status}")
        if journey_started is not None and stored.status == expected_status and stored.journey_started != journey_started:
            mismatches.append(f"journey_started is {stored.journey_started}, expected {journey_started}")
        return mismatches

    def _booking_scopes(self, booking: Booking) -> List[Tuple[str, ...]]:
        """Views that can show this booking: both parties' lists, the admin list and its tracking view."""
        scopes: List[Tuple[str, ...]] = [
            ("bookings", "all", booking.requester_id),
            ("bookings", "requester", booking.requester_id),
        ]
        provider = self.store.get_provider_profile(booking.provider_id)
        if provider:
            scopes += [("bookings", "all", provider.user_id), ("bookings", "provider", provider.user_id)]
        scopes += [("bookings", "admin"), ("tracking", booking.id)]
        return scopes

    async def _dispatch_sync(self, booking: Booking, expected_status: str, journey_started: Optional[bool] = None) -> None:
        booking_id = booking.id
        await self.sync.converge(
            label=f"booking:{booking_id}:{expected_status}",
            scopes=self._booking_scopes(booking),
            verify=lambda: self._verify(booking_id, expected_status, journey_started),
        )

    def _notify_confirmed(self, booking: Booking) -> None:
        self.notifications.dispatch(
            NotificationPayload(
                type="booking_confirmation",
                recipient=booking.requester_id,
                data={
                    "booking_id": booking.id,
                    "purpose": booking.purpose,
                    "scheduled_at": booking.scheduled_at,
                    "address": booking.address,
                    "price": booking.price,
                },
            )
        )


booking_manager = BookingLifecycleManager(seva_store, synchronizer, notification_store)
