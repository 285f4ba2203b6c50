from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

from booking_engine.models import (
    AvailableDay,
    AvailableSlot,
    Booking,
    DeliveryMethod,
    ProviderSchedule,
    ServiceOffering,
)
from booking_engine.services.availability import (
    DAY_NAMES,
    delivery_method_enabled,
    format_wall_end,
    load_timezone,
    resolve_day_windows,
    wall_time_exists,
    weekday_index,
    window_limit,
)
from booking_engine.services.conflicts import TimeRange, has_conflict


def service_offered(schedule: ProviderSchedule, service_id: str) -> bool:
    return not schedule.service_ids or service_id in schedule.service_ids


def generate_slots(
    schedule: ProviderSchedule,
    service: ServiceOffering,
    date_from: date,
    date_to: date,
    bookings: Iterable[Booking],
    now: datetime,
    customer_timezone: Optional[str] = None,
    delivery_method: Optional[DeliveryMethod] = None,
) -> List[AvailableDay]:
    """Bookable slots per provider-local date, inclusive of both ends.

    Dates with no surviving slot are left out of the result.
    """
    if not service_offered(schedule, service.id):
        return []
    if delivery_method is not None and not delivery_method_enabled(schedule, delivery_method):
        return []

    provider_tz = load_timezone(schedule.timezone)
    customer_tz = load_timezone(customer_timezone) if customer_timezone else None
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    earliest = now + timedelta(hours=schedule.minimum_notice_hours)
    latest = now + timedelta(days=schedule.advance_booking_days)
    duration = timedelta(minutes=service.duration_minutes)
    step = duration + timedelta(minutes=schedule.buffer_minutes)
    existing = list(bookings)

    days: List[AvailableDay] = []
    current = date_from
    while current <= date_to:
        slots: List[AvailableSlot] = []
        for window_start, window_end in resolve_day_windows(schedule, current):
            cursor = datetime.combine(current, window_start)
            limit = window_limit(current, window_end)
            while cursor + duration <= limit:
                candidate_end = cursor + duration
                if wall_time_exists(current, cursor.time(), provider_tz):
                    start_utc = cursor.replace(tzinfo=provider_tz).astimezone(timezone.utc)
                    end_utc = candidate_end.replace(tzinfo=provider_tz).astimezone(timezone.utc)
                    candidate = TimeRange(start_utc, end_utc)
                    if (
                        earliest <= start_utc <= latest
                        and not has_conflict(candidate, existing, schedule.buffer_minutes)
                    ):
                        slot = AvailableSlot(
                            start=cursor.strftime("%H:%M"),
                            end=format_wall_end(current, candidate_end),
                            start_utc=start_utc,
                            end_utc=end_utc,
                        )
                        if customer_tz is not None:
                            local_start = start_utc.astimezone(customer_tz)
                            slot.customer_date = local_start.date().isoformat()
                            slot.customer_start = local_start.strftime("%H:%M")
                            slot.customer_end = end_utc.astimezone(customer_tz).strftime("%H:%M")
                        slots.append(slot)
                cursor += step
        if slots:
            slots.sort(key=lambda item: item.start_utc)
            days.append(
                AvailableDay(
                    date=current.isoformat(),
                    day_name=DAY_NAMES[weekday_index(current)],
                    slots=slots,
                )
            )
        current += timedelta(days=1)
    return days
