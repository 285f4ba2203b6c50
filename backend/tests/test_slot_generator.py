from datetime import date, datetime, timedelta, timezone

from booking_engine.models import (
    Booking,
    BookingLifecycleState,
    DateOverride,
    DeliveryMethodConfig,
    MobileDelivery,
    ProviderSchedule,
    ServiceOffering,
    TimeSlot,
    WeekdayConfig,
)
from booking_engine.services.availability import normalize_schedule
from booking_engine.services.slot_generator import generate_slots

# Sunday 2026-03-01 12:00 UTC.
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MORNING = [TimeSlot(start="09:00", end="12:00")]


def _schedule(**overrides) -> ProviderSchedule:
    payload = {
        "provider_id": "prov_1",
        "timezone": "America/New_York",
        "weekdays": [
            WeekdayConfig(day=day, enabled=day in {2, 3, 4}, time_slots=MORNING if day in {2, 3, 4} else [])
            for day in range(7)
        ],
        "buffer_minutes": 15,
        "minimum_notice_hours": 0,
        "advance_booking_days": 30,
    }
    payload.update(overrides)
    return normalize_schedule(ProviderSchedule(**payload))


def _service(duration: int = 60) -> ServiceOffering:
    return ServiceOffering(id="svc_1", provider_id="prov_1", name="Reading", category="reading", duration_minutes=duration)


def _booking(start_utc: datetime, minutes: int = 60, status=BookingLifecycleState.CONFIRMED) -> Booking:
    return Booking(
        id=f"b_{start_utc.isoformat()}",
        provider_id="prov_1",
        service_id="svc_1",
        customer_id="cust_1",
        date=start_utc.date().isoformat(),
        start_time="00:00",
        end_time="01:00",
        start_utc=start_utc,
        end_utc=start_utc + timedelta(minutes=minutes),
        provider_timezone="America/New_York",
        delivery_method="ONLINE",
        confirmation_status=status,
        confirmation_deadline=start_utc,
        payment_intent_id="pi_1",
        amount=100.0,
        currency="usd",
        created_at=NOW,
        updated_at=NOW,
    )


def _starts(days):
    return {day.date: [slot.start for slot in day.slots] for day in days}


def test_disabled_monday_is_omitted():
    # 2026-03-02 is a Monday; Tuesday and Wednesday follow.
    days = generate_slots(_schedule(), _service(), date(2026, 3, 2), date(2026, 3, 4), [], NOW)
    assert [day.date for day in days] == ["2026-03-03", "2026-03-04"]
    assert days[0].day_name == "Tuesday"


def test_slots_step_by_duration_plus_buffer_and_stay_inside_window():
    days = generate_slots(_schedule(), _service(), date(2026, 3, 3), date(2026, 3, 3), [], NOW)
    assert _starts(days) == {"2026-03-03": ["09:00", "10:15"]}
    assert days[0].slots[-1].end == "11:15"


def test_slot_times_are_converted_to_utc():
    days = generate_slots(_schedule(), _service(), date(2026, 3, 3), date(2026, 3, 3), [], NOW)
    first = days[0].slots[0]
    assert first.start_utc == datetime(2026, 3, 3, 14, 0, tzinfo=timezone.utc)
    assert first.end_utc == datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


def test_minimum_notice_drops_early_slots():
    schedule = _schedule(minimum_notice_hours=48)
    # now + 48h = 2026-03-03 12:00 UTC = 07:00 local, so Tuesday survives whole.
    assert "2026-03-03" in _starts(generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 3), [], NOW))
    late_now = datetime(2026, 3, 1, 14, 30, tzinfo=timezone.utc)
    days = generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 3), [], late_now)
    assert _starts(days) == {"2026-03-03": ["10:15"]}
    for slot in days[0].slots:
        assert slot.start_utc >= late_now + timedelta(hours=48)


def test_advance_window_limits_far_dates():
    schedule = _schedule(advance_booking_days=3)
    days = generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 12), [], NOW)
    assert [day.date for day in days] == ["2026-03-03"]


def test_blocked_override_removes_day_and_custom_override_adds_one():
    schedule = _schedule(
        date_overrides=[
            DateOverride(date="2026-03-03", type="BLOCKED"),
            DateOverride(date="2026-03-02", type="CUSTOM", time_slots=[TimeSlot(start="18:00", end="19:00")]),
        ]
    )
    days = generate_slots(schedule, _service(), date(2026, 3, 2), date(2026, 3, 3), [], NOW)
    assert _starts(days) == {"2026-03-02": ["18:00"]}


def test_existing_bookings_block_overlapping_slots_with_buffer():
    # Existing 10:00-11:00 local (15:00 UTC) plus buffer occupies 10:00-11:15.
    existing = [_booking(datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc))]
    days = generate_slots(_schedule(), _service(duration=30), date(2026, 3, 3), date(2026, 3, 3), existing, NOW)
    assert _starts(days) == {"2026-03-03": ["09:00", "11:15"]}


def test_cancelled_bookings_do_not_block():
    existing = [_booking(datetime(2026, 3, 3, 14, 0, tzinfo=timezone.utc), status=BookingLifecycleState.CANCELLED)]
    days = generate_slots(_schedule(), _service(), date(2026, 3, 3), date(2026, 3, 3), existing, NOW)
    assert _starts(days) == {"2026-03-03": ["09:00", "10:15"]}


def test_disabled_delivery_method_returns_nothing():
    schedule = _schedule(delivery_methods=DeliveryMethodConfig(mobile=MobileDelivery(enabled=False)))
    assert generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 4), [], NOW, delivery_method="MOBILE") == []
    assert generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 4), [], NOW, delivery_method="ONLINE")


def test_service_not_listed_on_schedule_returns_nothing():
    schedule = _schedule(service_ids=["svc_other"])
    assert generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 4), [], NOW) == []


def test_customer_timezone_fields():
    days = generate_slots(
        _schedule(), _service(), date(2026, 3, 3), date(2026, 3, 3), [], NOW, customer_timezone="Asia/Tokyo"
    )
    first = days[0].slots[0]
    assert first.customer_date == "2026-03-03"
    assert first.customer_start == "23:00"
    assert first.customer_end == "00:00"


def test_spring_forward_skips_missing_wall_time():
    # New York jumps from 02:00 to 03:00 on 2026-03-08 (a Sunday).
    schedule = _schedule(
        buffer_minutes=0,
        date_overrides=[DateOverride(date="2026-03-08", type="CUSTOM", time_slots=[TimeSlot(start="01:00", end="04:00")])],
    )
    days = generate_slots(schedule, _service(), date(2026, 3, 8), date(2026, 3, 8), [], NOW)
    assert _starts(days) == {"2026-03-08": ["01:00", "03:00"]}
    assert days[0].slots[0].start_utc.hour == 6
    assert days[0].slots[1].start_utc.hour == 7


def test_generated_slots_never_overlap_after_buffer():
    schedule = _schedule(weekdays=[WeekdayConfig(day=2, enabled=True, time_slots=[TimeSlot(start="08:00", end="20:00")])])
    days = generate_slots(schedule, _service(duration=45), date(2026, 3, 3), date(2026, 3, 3), [], NOW)
    slots = days[0].slots
    for previous, current in zip(slots, slots[1:]):
        assert current.start_utc >= previous.end_utc + timedelta(minutes=schedule.buffer_minutes)
    assert slots[-1].end <= "20:00"


def test_window_ending_at_midnight_yields_last_slot():
    late = DateOverride(date="2026-03-03", type="CUSTOM", time_slots=[TimeSlot(start="23:00", end="24:00")])
    schedule = _schedule(date_overrides=[late])
    days = generate_slots(schedule, _service(), date(2026, 3, 3), date(2026, 3, 3), [], NOW)
    assert [(slot.start, slot.end) for slot in days[0].slots] == [("23:00", "24:00")]
    assert days[0].slots[0].end_utc == datetime(2026, 3, 4, 5, 0, tzinfo=timezone.utc)
