import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from app.models import Booking, LocationSample, TrackingStatus
from app.services.errors import NotFoundError, ValidationError
from app.services.seva_store import SevaStore, parse_iso_datetime, seva_store
from app.services.subscriptions import Subscription
from app.services.view_cache import QueryCache, view_cache

logger = logging.getLogger(__name__)

ETA_CALCULATING = "calculating"
ETA_ARRIVING = "arriving now"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_eta(estimated_arrival: Union[str, datetime], now: Optional[datetime] = None) -> str:
    """Remaining time until estimated_arrival as "arriving now", "N min" or "Hh Mm"."""
    if isinstance(estimated_arrival, str):
        try:
            estimated_arrival = parse_iso_datetime(estimated_arrival, field="estimated_arrival")
        except ValidationError:
            return ETA_CALCULATING
    if estimated_arrival.tzinfo is None:
        estimated_arrival = estimated_arrival.replace(tzinfo=timezone.utc)
    now = now or _utc_now()
    minutes = math.floor((estimated_arrival - now).total_seconds() / 60 + 0.5)
    if minutes <= 0:
        return ETA_ARRIVING
    if minutes < 60:
        return f"{minutes} min"
    hours, remainder = divmod(minutes, 60)
    return f"{hours}h {remainder}m"


def is_en_route(booking: Booking) -> bool:
    return booking.status == "confirmed" and booking.journey_started


class LocationTracker:
    """Latest-position tracking for bookings whose provider is travelling.

    Samples are accepted only while the booking is confirmed with the journey
    started; only the most recent sample per booking is kept.
    """

    def __init__(
        self,
        store: SevaStore,
        cache: QueryCache,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def report_position(
        self,
        booking_id: str,
        latitude: float,
        longitude: float,
        speed: Optional[float] = None,
        heading: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> bool:
        if not -90.0 <= latitude <= 90.0:
            raise ValidationError("latitude must be between -90 and 90")
        if not -180.0 <= longitude <= 180.0:
            raise ValidationError("longitude must be between -180 and 180")
        if speed is not None and speed < 0:
            raise ValidationError("speed cannot be negative")

        booking = self._require_booking(booking_id)
        # record_location_sample re-checks the booking row in the same statement.
        accepted = is_en_route(booking) and self.store.record_location_sample(
            LocationSample(
                booking_id=booking_id,
                provider_id=booking.provider_id,
                latitude=latitude,
                longitude=longitude,
                speed=speed,
                heading=heading,
                accuracy=accuracy,
                captured_at=self.clock().isoformat(),
            )
        )
        if not accepted:
            logger.debug("Position for booking %s ignored: booking is not en route", booking_id)
            return False
        self.cache.refetch(("tracking", booking_id))
        return True

    def current_status(self, booking_id: str) -> TrackingStatus:
        booking = self._require_booking(booking_id)
        if booking.status == "completed":
            phase = "arrived"
        elif is_en_route(booking):
            phase = "en_route"
        else:
            phase = "preparing"

        sample: Optional[LocationSample] = None
        eta: Optional[str] = None
        if phase == "en_route":
            sample = self.store.get_location_sample(booking_id)
            if booking.estimated_arrival:
                eta = format_eta(booking.estimated_arrival, self.clock())
            elif sample is None:
                eta = ETA_CALCULATING

        return TrackingStatus(
            booking_id=booking_id,
            booking_status=booking.status,
            phase=phase,
            last_sample=sample,
            eta_estimate=eta,
            estimated_arrival=booking.estimated_arrival if phase == "en_route" else None,
        )

    def subscribe(self, booking_id: str, listener: Callable[[TrackingStatus], None]) -> Subscription:
        """Push every refreshed TrackingStatus to listener until the subscription is closed."""
        self._require_booking(booking_id)
        return self.cache.subscribe(
            ("tracking", booking_id),
            loader=lambda: self.current_status(booking_id),
            listener=listener,
        )


location_tracker = LocationTracker(seva_store, view_cache)
