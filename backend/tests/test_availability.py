from datetime import date, datetime, timezone

import pytest

from booking_engine.models import (
    AtProviderDelivery,
    DateOverride,
    DeliveryMethodConfig,
    MobileDelivery,
    Place,
    ProviderSchedule,
    TimeSlot,
    WeekdayConfig,
)
from booking_engine.services.availability import (
    convert_legacy_schedule,
    normalize_schedule,
    public_schedule_view,
    resolve_day_windows,
    with_override,
    without_override,
)
from booking_engine.services.errors import SchedulingValidationError
from booking_engine.settings import ScheduleDefaults

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _schedule(**overrides) -> ProviderSchedule:
    payload = {
        "provider_id": "prov_1",
        "timezone": "Europe/Berlin",
        "weekdays": [WeekdayConfig(day=1, enabled=True, time_slots=[TimeSlot(start="09:00", end="12:00")])],
    }
    payload.update(overrides)
    return ProviderSchedule(**payload)


def test_normalize_pads_to_seven_ordered_days_and_sorts_windows():
    schedule = normalize_schedule(
        _schedule(
            weekdays=[
                WeekdayConfig(
                    day=3,
                    enabled=True,
                    time_slots=[TimeSlot(start="14:00", end="16:00"), TimeSlot(start="09:00", end="12:00")],
                )
            ]
        )
    )
    assert [wd.day for wd in schedule.weekdays] == list(range(7))
    assert [slot.start for slot in schedule.weekdays[3].time_slots] == ["09:00", "14:00"]
    assert schedule.weekdays[0].enabled is False


@pytest.mark.parametrize(
    "slots",
    [
        [TimeSlot(start="10:00", end="10:00")],
        [TimeSlot(start="12:00", end="09:00")],
        [TimeSlot(start="09:00", end="11:00"), TimeSlot(start="10:30", end="12:00")],
        [TimeSlot(start="9am", end="11:00")],
    ],
)
def test_normalize_rejects_bad_windows(slots):
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(weekdays=[WeekdayConfig(day=2, enabled=True, time_slots=slots)]))


def test_adjacent_windows_are_allowed():
    schedule = normalize_schedule(
        _schedule(
            weekdays=[
                WeekdayConfig(
                    day=2,
                    enabled=True,
                    time_slots=[TimeSlot(start="09:00", end="11:00"), TimeSlot(start="11:00", end="12:00")],
                )
            ]
        )
    )
    assert len(schedule.weekdays[2].time_slots) == 2


def test_normalize_rejects_duplicate_days_and_bad_settings():
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(weekdays=[WeekdayConfig(day=1), WeekdayConfig(day=1)]))
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(timezone="Mars/Olympus_Mons"))
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(buffer_minutes=-5))
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(advance_booking_days=0))


def test_custom_override_needs_windows_and_valid_date():
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(date_overrides=[DateOverride(date="2026-03-10", type="CUSTOM")]))
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(_schedule(date_overrides=[DateOverride(date="10/03/2026", type="BLOCKED")]))


def test_override_last_write_wins_and_takes_precedence():
    schedule = normalize_schedule(_schedule())
    monday = date(2026, 3, 2)
    assert resolve_day_windows(schedule, monday)
    schedule = with_override(schedule, DateOverride(date="2026-03-02", type="BLOCKED", reason="holiday"))
    assert resolve_day_windows(schedule, monday) == []
    schedule = with_override(
        schedule, DateOverride(date="2026-03-02", type="CUSTOM", time_slots=[TimeSlot(start="13:00", end="15:00")])
    )
    assert len(schedule.date_overrides) == 1
    assert [(start.hour, end.hour) for start, end in resolve_day_windows(schedule, monday)] == [(13, 15)]

    schedule, removed = without_override(schedule, "2026-03-02")
    assert removed is True
    assert [(start.hour, end.hour) for start, end in resolve_day_windows(schedule, monday)] == [(9, 12)]
    _, removed_again = without_override(schedule, "2026-03-02")
    assert removed_again is False


def test_public_view_hides_private_locations():
    schedule = _schedule(
        delivery_methods=DeliveryMethodConfig(
            at_provider_location=AtProviderDelivery(
                enabled=True, location=Place(formatted_address="1 Secret St"), display_area="Mitte"
            ),
            mobile=MobileDelivery(enabled=True, base_location=Place(formatted_address="2 Home St")),
        )
    )
    public = public_schedule_view(schedule, viewer_id="cust_1")
    assert public.delivery_methods.at_provider_location.location is None
    assert public.delivery_methods.at_provider_location.display_area == "Mitte"
    assert public.delivery_methods.mobile.base_location is None
    own = public_schedule_view(schedule, viewer_id="prov_1")
    assert own.delivery_methods.at_provider_location.location.formatted_address == "1 Secret St"


def test_convert_legacy_schedule_with_named_days_and_overrides():
    document = {
        "timezone": "America/Chicago",
        "weekdays": [
            {"day": "Monday", "enabled": True, "times": [{"start": "2024-01-01T09:00:00", "end": "2024-01-01T12:00:00"}]},
            {"day": "Friday", "enabled": False, "times": []},
        ],
        "dateOverrides": [
            {"date": "2026-04-03", "times": []},
            {"date": "2026-04-04", "available": True, "times": [{"start": "10:00", "end": "11:30"}]},
            {"date": "2026-04-05", "times": [{"start": "10:00", "end": "11:30"}]},
        ],
        "serviceIds": ["svc_1"],
    }
    schedule = convert_legacy_schedule("prov_9", document, ScheduleDefaults(), NOW)
    assert schedule.timezone == "America/Chicago"
    assert schedule.weekdays[1].enabled is True
    assert schedule.weekdays[1].time_slots == [TimeSlot(start="09:00", end="12:00")]
    assert schedule.weekdays[5].enabled is False
    assert [(item.date, item.type) for item in schedule.date_overrides] == [
        ("2026-04-03", "BLOCKED"),
        ("2026-04-04", "CUSTOM"),
        ("2026-04-05", "BLOCKED"),
    ]
    assert schedule.service_ids == ["svc_1"]
    assert schedule.buffer_minutes == 15


def test_convert_legacy_schedule_numbered_days_and_rrule():
    document = {
        "weekdays": [
            {"day": 7, "enabled": True, "times": [{"rrule": "FREQ=WEEKLY;BYHOUR=14;BYMINUTE=30|DURATION=5400000"}]},
        ]
    }
    schedule = convert_legacy_schedule("prov_9", document, ScheduleDefaults(timezone="UTC"), NOW)
    assert schedule.weekdays[0].enabled is True
    assert schedule.weekdays[0].time_slots == [TimeSlot(start="14:30", end="16:00")]


def test_convert_legacy_rrule_takes_time_from_dtstart():
    document = {
        "weekdays": [
            {
                "day": "Monday",
                "enabled": True,
                "times": [{"rrule": "DTSTART:20240101T090000\nRRULE:FREQ=WEEKLY;BYDAY=MO|duration=3600000"}],
            },
        ]
    }
    schedule = convert_legacy_schedule("prov_9", document, ScheduleDefaults(timezone="UTC"), NOW)
    assert schedule.weekdays[1].time_slots == [TimeSlot(start="09:00", end="10:00")]


def test_convert_legacy_rrule_clips_at_midnight_and_rejects_garbage():
    document = {"weekdays": [{"day": 3, "times": [{"rrule": "FREQ=WEEKLY;BYHOUR=22|duration=10800000"}]}]}
    schedule = convert_legacy_schedule("prov_9", document, ScheduleDefaults(timezone="UTC"), NOW)
    assert schedule.weekdays[3].time_slots == [TimeSlot(start="22:00", end="24:00")]

    broken = {"weekdays": [{"day": 3, "times": [{"rrule": "FREQ=SOMETIMES"}]}]}
    with pytest.raises(SchedulingValidationError):
        convert_legacy_schedule("prov_9", broken, ScheduleDefaults(timezone="UTC"), NOW)


def test_window_may_end_at_midnight():
    schedule = normalize_schedule(
        _schedule(weekdays=[WeekdayConfig(day=1, enabled=True, time_slots=[TimeSlot(start="22:00", end="24:00")])])
    )
    assert schedule.weekdays[1].time_slots == [TimeSlot(start="22:00", end="24:00")]
    with pytest.raises(SchedulingValidationError):
        normalize_schedule(
            _schedule(weekdays=[WeekdayConfig(day=1, enabled=True, time_slots=[TimeSlot(start="24:00", end="24:00")])])
        )
