"""Provider availability: validation, day resolution and projections.

Weekday indices run 0=Sunday .. 6=Saturday. Time windows are provider-local
wall time; conversion to UTC happens only through ``local_to_utc``.
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrule, rrulestr

from booking_engine.models import (
    DateOverride,
    DeliveryMethod,
    ProviderSchedule,
    TimeSlot,
    WeekdayConfig,
)
from booking_engine.services.errors import SchedulingValidationError
from booking_engine.settings import ScheduleDefaults

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

Window = Tuple[time, time]

# Window end for "24:00"; slots may run up to local midnight.
END_OF_DAY = time.max


def parse_iso_date(value: str, *, field: str = "date") -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise SchedulingValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc


def parse_hhmm(value: str, *, field: str = "time", allow_end_of_day: bool = False) -> time:
    """Parse strict ``HH:MM``. ``24:00`` is accepted only as a window end."""
    if not isinstance(value, str) or not re.fullmatch(r"\d{2}:\d{2}", value.strip()):
        raise SchedulingValidationError(f"Invalid {field}; expected HH:MM")
    if allow_end_of_day and value.strip() == "24:00":
        return END_OF_DAY
    try:
        return time.fromisoformat(value.strip())
    except ValueError as exc:
        raise SchedulingValidationError(f"Invalid {field}; expected HH:MM") from exc


def format_hhmm(value: time) -> str:
    if value == END_OF_DAY:
        return "24:00"
    return value.strftime("%H:%M")


def window_limit(day: date, window_end: time) -> datetime:
    """Naive local datetime at which a window ending at ``window_end`` closes."""
    if window_end == END_OF_DAY:
        return datetime.combine(day + timedelta(days=1), time.min)
    return datetime.combine(day, window_end)


def format_wall_end(day: date, end_local: datetime) -> str:
    if end_local == datetime.combine(day + timedelta(days=1), time.min):
        return "24:00"
    return end_local.strftime("%H:%M")


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise SchedulingValidationError(f"Unknown timezone: {name}") from exc


def weekday_index(day: date) -> int:
    return (day.weekday() + 1) % 7


def local_to_utc(day: date, wall_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, wall_time, tzinfo=tz).astimezone(timezone.utc)


def wall_time_exists(day: date, wall_time: time, tz: ZoneInfo) -> bool:
    """False for wall times skipped by a DST jump in ``tz``."""
    local = datetime.combine(day, wall_time, tzinfo=tz)
    round_trip = local.astimezone(timezone.utc).astimezone(tz)
    return round_trip.replace(tzinfo=None) == local.replace(tzinfo=None)


def normalize_time_slots(slots: Iterable[TimeSlot], *, where: str) -> List[TimeSlot]:
    windows: List[Window] = []
    for slot in slots:
        start = parse_hhmm(slot.start, field=f"{where} start")
        end = parse_hhmm(slot.end, field=f"{where} end", allow_end_of_day=True)
        if start >= end:
            raise SchedulingValidationError(f"{where}: start {slot.start} must be before end {slot.end}")
        windows.append((start, end))
    windows.sort()
    for previous, current in zip(windows, windows[1:]):
        if current[0] < previous[1]:
            raise SchedulingValidationError(
                f"{where}: time slots {format_hhmm(previous[0])}-{format_hhmm(previous[1])} and "
                f"{format_hhmm(current[0])}-{format_hhmm(current[1])} overlap"
            )
    return [TimeSlot(start=format_hhmm(start), end=format_hhmm(end)) for start, end in windows]


def normalize_weekdays(weekdays: Iterable[WeekdayConfig]) -> List[WeekdayConfig]:
    by_day: Dict[int, WeekdayConfig] = {}
    for config in weekdays:
        if config.day in by_day:
            raise SchedulingValidationError(f"Duplicate weekday configuration for {DAY_NAMES[config.day]}")
        by_day[config.day] = WeekdayConfig(
            day=config.day,
            enabled=config.enabled,
            time_slots=normalize_time_slots(config.time_slots, where=DAY_NAMES[config.day]),
        )
    return [by_day.get(day, WeekdayConfig(day=day, enabled=False)) for day in range(7)]


def normalize_override(override: DateOverride) -> DateOverride:
    parsed = parse_iso_date(override.date, field="override date")
    if override.type == "BLOCKED":
        return DateOverride(date=parsed.isoformat(), type="BLOCKED", time_slots=[], reason=override.reason)
    slots = normalize_time_slots(override.time_slots, where=f"Override {parsed.isoformat()}")
    if not slots:
        raise SchedulingValidationError("A CUSTOM date override needs at least one time slot")
    return DateOverride(date=parsed.isoformat(), type="CUSTOM", time_slots=slots, reason=override.reason)


def normalize_schedule(schedule: ProviderSchedule) -> ProviderSchedule:
    load_timezone(schedule.timezone)
    if schedule.buffer_minutes < 0:
        raise SchedulingValidationError("buffer_minutes must not be negative")
    if schedule.minimum_notice_hours < 0:
        raise SchedulingValidationError("minimum_notice_hours must not be negative")
    if schedule.advance_booking_days < 1:
        raise SchedulingValidationError("advance_booking_days must be at least 1")

    overrides: Dict[str, DateOverride] = {}
    for override in schedule.date_overrides:
        normalized = normalize_override(override)
        overrides[normalized.date] = normalized

    return schedule.model_copy(
        update={
            "weekdays": normalize_weekdays(schedule.weekdays),
            "date_overrides": [overrides[key] for key in sorted(overrides)],
            "service_ids": list(dict.fromkeys(sid.strip() for sid in schedule.service_ids if sid.strip())),
        }
    )


def with_override(schedule: ProviderSchedule, override: DateOverride) -> ProviderSchedule:
    normalized = normalize_override(override)
    remaining = [item for item in schedule.date_overrides if item.date != normalized.date]
    remaining.append(normalized)
    remaining.sort(key=lambda item: item.date)
    return schedule.model_copy(update={"date_overrides": remaining})


def without_override(schedule: ProviderSchedule, override_date: str) -> Tuple[ProviderSchedule, bool]:
    key = parse_iso_date(override_date, field="override date").isoformat()
    remaining = [item for item in schedule.date_overrides if item.date != key]
    removed = len(remaining) != len(schedule.date_overrides)
    return schedule.model_copy(update={"date_overrides": remaining}), removed


def find_override(schedule: ProviderSchedule, day: date) -> Optional[DateOverride]:
    key = day.isoformat()
    for override in schedule.date_overrides:
        if override.date == key:
            return override
    return None


def resolve_day_windows(schedule: ProviderSchedule, day: date) -> List[Window]:
    override = find_override(schedule, day)
    if override is not None:
        if override.type == "BLOCKED":
            return []
        slots = override.time_slots
    else:
        config = next((wd for wd in schedule.weekdays if wd.day == weekday_index(day)), None)
        if config is None or not config.enabled:
            return []
        slots = config.time_slots
    return [(parse_hhmm(slot.start), parse_hhmm(slot.end, allow_end_of_day=True)) for slot in slots]


def delivery_method_enabled(schedule: ProviderSchedule, method: DeliveryMethod) -> bool:
    methods = schedule.delivery_methods
    if method == "ONLINE":
        return methods.online.enabled
    if method == "AT_PROVIDER_LOCATION":
        return methods.at_provider_location.enabled
    if method == "MOBILE":
        return methods.mobile.enabled
    return False


def public_schedule_view(schedule: ProviderSchedule, viewer_id: Optional[str]) -> ProviderSchedule:
    if viewer_id == schedule.provider_id:
        return schedule
    methods = schedule.delivery_methods
    stripped = methods.model_copy(
        update={
            "at_provider_location": methods.at_provider_location.model_copy(update={"location": None}),
            "mobile": methods.mobile.model_copy(update={"base_location": None}),
        }
    )
    return schedule.model_copy(update={"delivery_methods": stripped})


def new_schedule(provider_id: str, defaults: ScheduleDefaults, now: datetime) -> ProviderSchedule:
    return ProviderSchedule(
        provider_id=provider_id,
        timezone=defaults.timezone,
        weekdays=[WeekdayConfig(day=day) for day in range(7)],
        buffer_minutes=defaults.buffer_minutes,
        minimum_notice_hours=defaults.minimum_notice_hours,
        advance_booking_days=defaults.advance_booking_days,
        created_at=now,
        updated_at=now,
    )


# Older documents: weekdays named ("Monday") or numbered 1=Monday..7=Sunday,
# windows under "times" as HH:MM, ISO datetimes, or an rrule with a duration.
_LEGACY_DAY_NAMES = {name.lower(): index for index, name in enumerate(DAY_NAMES)}
_LEGACY_RRULE_ANCHOR = datetime(2000, 1, 1)


def _legacy_day_index(entry: Dict[str, Any]) -> int:
    raw = entry.get("day")
    if isinstance(raw, str):
        index = _LEGACY_DAY_NAMES.get(raw.strip().lower())
        if index is None:
            raise SchedulingValidationError(f"Unknown legacy weekday: {raw!r}")
        return index
    if isinstance(raw, int) and 1 <= raw <= 7:
        return raw % 7
    acronym = entry.get("day_acronym")
    if isinstance(acronym, int) and 0 <= acronym <= 6:
        # day_acronym counts from Monday.
        return (acronym + 1) % 7
    raise SchedulingValidationError(f"Legacy weekday entry has no usable day: {entry!r}")


def _legacy_clock(value: str) -> str:
    text = value.strip()
    if "T" in text:
        text = text.split("T", 1)[1]
    return text[:5]


def _legacy_rrule_window(rule: str) -> TimeSlot:
    # "<rrule>|duration=<ms>"; hour and minute come from BYHOUR/BYMINUTE or DTSTART.
    rule_text, _, duration_text = rule.partition("|")
    try:
        parsed = rrulestr(rule_text.strip(), dtstart=_LEGACY_RRULE_ANCHOR)
    except (ValueError, TypeError) as exc:
        raise SchedulingValidationError(f"Unparseable legacy rrule: {rule!r}") from exc
    if not isinstance(parsed, rrule):
        raise SchedulingValidationError(f"Legacy rrule must hold a single rule: {rule!r}")
    hours = sorted(parsed._byhour or ())  # pylint: disable=protected-access
    minutes = sorted(parsed._byminute or ())  # pylint: disable=protected-access
    duration_ms = 3_600_000
    if duration_text:
        try:
            duration_ms = int(duration_text.split("=", 1)[-1])
        except ValueError as exc:
            raise SchedulingValidationError(f"Invalid legacy rrule duration: {rule!r}") from exc
    day = _LEGACY_RRULE_ANCHOR.date()
    start = datetime.combine(day, time(hours[0] if hours else 0, minutes[0] if minutes else 0))
    end = min(start + timedelta(milliseconds=duration_ms), window_limit(day, END_OF_DAY))
    return TimeSlot(start=start.strftime("%H:%M"), end=format_wall_end(day, end))


def _legacy_window(raw: Dict[str, Any]) -> Optional[TimeSlot]:
    if raw.get("start") and raw.get("end"):
        return TimeSlot(start=_legacy_clock(str(raw["start"])), end=_legacy_clock(str(raw["end"])))
    rule = raw.get("rrule")
    if isinstance(rule, str) and rule.strip():
        return _legacy_rrule_window(rule)
    logger.warning("Skipping legacy time window without start/end: %r", raw)
    return None


def _legacy_windows(items: Iterable[Dict[str, Any]]) -> List[TimeSlot]:
    windows = [_legacy_window(item) for item in items or []]
    return [window for window in windows if window is not None]


def convert_legacy_schedule(
    provider_id: str,
    document: Dict[str, Any],
    defaults: ScheduleDefaults,
    now: datetime,
) -> ProviderSchedule:
    weekdays = []
    for entry in document.get("weekdays") or []:
        windows = _legacy_windows(entry.get("times") or [])
        weekdays.append(
            WeekdayConfig(
                day=_legacy_day_index(entry),
                enabled=bool(entry.get("enabled", bool(windows))),
                time_slots=windows,
            )
        )

    overrides = []
    for entry in document.get("dateOverrides") or []:
        windows = _legacy_windows(entry.get("times") or [])
        # Only an explicit "available": true keeps the custom hours.
        blocked = not windows or entry.get("available") is not True
        overrides.append(
            DateOverride(
                date=str(entry.get("date", "")),
                type="BLOCKED" if blocked else "CUSTOM",
                time_slots=[] if blocked else windows,
                reason=str(entry.get("reason") or ""),
            )
        )

    schedule = ProviderSchedule(
        provider_id=provider_id,
        timezone=str(document.get("timezone") or defaults.timezone),
        weekdays=weekdays,
        date_overrides=overrides,
        service_ids=[str(sid) for sid in document.get("serviceIds") or []],
        buffer_minutes=int(document.get("bufferMinutes", defaults.buffer_minutes)),
        minimum_notice_hours=int(document.get("minimumNoticeHours", defaults.minimum_notice_hours)),
        advance_booking_days=int(document.get("advanceBookingDays", defaults.advance_booking_days)),
        created_at=now,
        updated_at=now,
    )
    return normalize_schedule(schedule)
