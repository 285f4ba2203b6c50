from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from booking_engine.models import ACTIVE_BOOKING_STATES, Booking


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeRange:
    """Half-open ``[start, end)`` interval in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))

    def overlaps(self, other: "TimeRange", buffer_minutes: int = 0) -> bool:
        # The buffer trails the other range: a new appointment may start
        # once the previous one ended plus the provider's buffer.
        padded_end = other.end + timedelta(minutes=max(buffer_minutes, 0))
        return self.start < padded_end and self.end > other.start


def booking_range(booking: Booking) -> TimeRange:
    return TimeRange(booking.start_utc, booking.end_utc)


def find_conflict(
    candidate: TimeRange,
    bookings: Iterable[Booking],
    buffer_minutes: int = 0,
    *,
    ignore_booking_id: Optional[str] = None,
) -> Optional[Booking]:
    for booking in bookings:
        if booking.confirmation_status not in ACTIVE_BOOKING_STATES:
            continue
        if ignore_booking_id is not None and booking.id == ignore_booking_id:
            continue
        if candidate.overlaps(booking_range(booking), buffer_minutes):
            return booking
    return None


def has_conflict(
    candidate: TimeRange,
    bookings: Iterable[Booking],
    buffer_minutes: int = 0,
    *,
    ignore_booking_id: Optional[str] = None,
) -> bool:
    return find_conflict(candidate, bookings, buffer_minutes, ignore_booking_id=ignore_booking_id) is not None
