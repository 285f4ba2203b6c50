"""Booking lifecycle coordinated with manual-capture payments.

Every state change goes through a conditional store write keyed on the
status read at the start of the call, so two racing callers cannot both
leave ``PENDING_CONFIRMATION``. Payment calls happen between the read and
the write and carry idempotency keys derived from the booking id.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from booking_engine.models import (
    ACTIVE_BOOKING_STATES,
    AvailableDay,
    Booking,
    BookingCancelRequest,
    BookingConfirmRequest,
    BookingHistoryEntry,
    BookingLifecycleState,
    BookingRejectRequest,
    BookingRequest,
    BookingRescheduleRequest,
    CancellationPolicy,
    DateOverride,
    DateOverrideRequest,
    DeliveryMethod,
    ExpirySweepResult,
    Place,
    ProviderSchedule,
    RefundCalculation,
    ReminderDispatchResult,
    ScheduleUpsertRequest,
    ServiceOffering,
    ServiceUpsertRequest,
)
from booking_engine.services.availability import (
    DAY_NAMES,
    delivery_method_enabled,
    format_hhmm,
    format_wall_end,
    load_timezone,
    new_schedule,
    normalize_schedule,
    parse_hhmm,
    parse_iso_date,
    public_schedule_view,
    resolve_day_windows,
    wall_time_exists,
    weekday_index,
    window_limit,
    with_override,
    without_override,
)
from booking_engine.services.cancellation_policy import (
    DEFAULT_POLICY_BOOK,
    PolicyBook,
    calculate_refund,
    check_reschedule_eligibility,
)
from booking_engine.services.clock import SystemClock
from booking_engine.services.conflicts import TimeRange, find_conflict
from booking_engine.services.errors import (
    PaymentError,
    SchedulingNotFoundError,
    SchedulingPermissionError,
    SchedulingValidationError,
    SlotUnavailableError,
    StateConflictError,
)
from booking_engine.services.notification_store import notification_store
from booking_engine.services.payment_gateway import PaymentGateway, PaymentGatewayError, build_payment_gateway
from booking_engine.services.pricing import quote_price, to_minor_units
from booking_engine.services.schedule_store import SchedulingStore, scheduling_store
from booking_engine.services.slot_generator import generate_slots, service_offered
from booking_engine.settings import FeeConfig, ScheduleDefaults, settings

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
PENDING = BookingLifecycleState.PENDING_CONFIRMATION
CONFIRMED = BookingLifecycleState.CONFIRMED


def _haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class BookingEngine:
    def __init__(
        self,
        store: SchedulingStore,
        gateway: PaymentGateway,
        notifier: Any,
        clock: Any = None,
        policy_book: Optional[PolicyBook] = None,
        fees: Optional[FeeConfig] = None,
        schedule_defaults: Optional[ScheduleDefaults] = None,
        confirmation_window_hours: int = 24,
        max_slot_query_days: int = 62,
        default_currency: str = "usd",
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.policy_book = policy_book or DEFAULT_POLICY_BOOK
        self.fees = fees or FeeConfig()
        self.schedule_defaults = schedule_defaults or ScheduleDefaults()
        self.confirmation_window = timedelta(hours=confirmation_window_hours)
        self.max_slot_query_days = max_slot_query_days
        self.default_currency = default_currency

    # Lookups

    def _require_schedule(self, provider_id: str) -> ProviderSchedule:
        schedule = self.store.get_schedule(provider_id)
        if schedule is None:
            raise SchedulingNotFoundError("Schedule not found")
        return schedule

    def _require_service(self, provider_id: str, service_id: str) -> ServiceOffering:
        service = self.store.get_service(service_id)
        if service is None or service.provider_id != provider_id:
            raise SchedulingNotFoundError("Service not found")
        return service

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise SchedulingNotFoundError("Booking not found")
        return booking

    def _assert_provider(self, provider_id: str, actor_user_id: str) -> None:
        if actor_user_id != provider_id:
            raise SchedulingPermissionError("Only the provider can change this schedule")

    def _policy_for(self, booking: Booking) -> CancellationPolicy:
        service = self._require_service(booking.provider_id, booking.service_id)
        return self.policy_book.resolve(service)

    # Schedule management

    def get_schedule(self, provider_id: str, viewer_id: Optional[str] = None) -> ProviderSchedule:
        return public_schedule_view(self._require_schedule(provider_id), viewer_id)

    def set_schedule(self, provider_id: str, request: ScheduleUpsertRequest) -> ProviderSchedule:
        self._assert_provider(provider_id, request.actor_user_id)
        now = self.clock.now()
        current = self.store.get_schedule(provider_id) or new_schedule(provider_id, self.schedule_defaults, now)
        updates: Dict[str, Any] = {"updated_at": now}
        if "weekdays" in request.model_fields_set:
            updates["weekdays"] = request.weekdays
        for name in (
            "timezone",
            "service_ids",
            "buffer_minutes",
            "minimum_notice_hours",
            "advance_booking_days",
            "delivery_methods",
        ):
            value = getattr(request, name)
            if value is not None:
                updates[name] = value
        schedule = normalize_schedule(current.model_copy(update=updates))
        self.store.save_schedule(schedule)
        logger.info("Saved schedule for provider %s", provider_id)
        return schedule

    def set_date_override(self, provider_id: str, request: DateOverrideRequest) -> ProviderSchedule:
        self._assert_provider(provider_id, request.actor_user_id)
        schedule = self._require_schedule(provider_id)
        override = DateOverride(
            date=request.date,
            type=request.type,
            time_slots=request.time_slots,
            reason=request.reason,
        )
        updated = with_override(schedule, override).model_copy(update={"updated_at": self.clock.now()})
        self.store.save_schedule(updated)
        logger.info("Set %s override on %s for provider %s", request.type, request.date, provider_id)
        return updated

    def remove_date_override(self, provider_id: str, actor_user_id: str, override_date: str) -> ProviderSchedule:
        self._assert_provider(provider_id, actor_user_id)
        schedule = self._require_schedule(provider_id)
        updated, removed = without_override(schedule, override_date)
        if not removed:
            raise SchedulingNotFoundError(f"No override for {override_date}")
        updated = updated.model_copy(update={"updated_at": self.clock.now()})
        self.store.save_schedule(updated)
        return updated

    def upsert_service(self, provider_id: str, service_id: str, request: ServiceUpsertRequest) -> ServiceOffering:
        self._assert_provider(provider_id, request.actor_user_id)
        existing = self.store.get_service(service_id)
        if existing is not None and existing.provider_id != provider_id:
            raise SchedulingPermissionError("Service belongs to another provider")
        if request.duration_minutes <= 0:
            raise SchedulingValidationError("duration_minutes must be positive")
        if not request.name.strip() or not request.category.strip():
            raise SchedulingValidationError("Service name and category are required")
        service = ServiceOffering(
            id=service_id,
            provider_id=provider_id,
            name=request.name.strip(),
            category=request.category.strip().lower(),
            duration_minutes=request.duration_minutes,
            pricing=request.pricing,
            currency=(request.currency or self.default_currency).lower(),
            add_ons=request.add_ons,
            cancellation_policy=request.cancellation_policy,
        )
        return self.store.save_service(service)

    # Slots

    def get_available_slots(
        self,
        provider_id: str,
        service_id: str,
        date_from: str,
        date_to: str,
        customer_timezone: Optional[str] = None,
        delivery_method: Optional[DeliveryMethod] = None,
    ) -> List[AvailableDay]:
        start_day = parse_iso_date(date_from, field="date_from")
        end_day = parse_iso_date(date_to, field="date_to")
        if end_day < start_day:
            raise SchedulingValidationError("date_to must not be before date_from")
        if (end_day - start_day).days + 1 > self.max_slot_query_days:
            raise SchedulingValidationError(f"Date range may span at most {self.max_slot_query_days} days")
        if customer_timezone:
            load_timezone(customer_timezone)

        schedule = self.store.get_schedule(provider_id)
        if schedule is None:
            return []
        service = self._require_service(provider_id, service_id)
        tz = load_timezone(schedule.timezone)
        bookings = self.store.list_active_for_provider(
            provider_id,
            datetime.combine(start_day, time.min, tzinfo=tz),
            datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=tz),
            buffer_minutes=schedule.buffer_minutes,
        )
        return generate_slots(
            schedule,
            service,
            start_day,
            end_day,
            bookings,
            self.clock.now(),
            customer_timezone=customer_timezone,
            delivery_method=delivery_method,
        )

    def _validate_requested_time(
        self,
        schedule: ProviderSchedule,
        service: ServiceOffering,
        requested_date: str,
        start_time: str,
        delivery_method: DeliveryMethod,
        now: datetime,
        *,
        end_time: Optional[str] = None,
        ignore_booking_id: Optional[str] = None,
    ) -> Tuple[date, str, str, datetime, datetime]:
        day = parse_iso_date(requested_date)
        start = parse_hhmm(start_time, field="start_time")
        tz = load_timezone(schedule.timezone)
        start_local = datetime.combine(day, start)
        end_local = start_local + timedelta(minutes=service.duration_minutes)
        expected_end = format_wall_end(day, end_local)
        requested_end = parse_hhmm(end_time, field="end_time", allow_end_of_day=True) if end_time is not None else None
        if requested_end is not None and format_hhmm(requested_end) != expected_end:
            raise SchedulingValidationError(
                f"end_time must be {expected_end} for a {service.duration_minutes} minute service"
            )

        if not service_offered(schedule, service.id):
            raise SlotUnavailableError("This service is not offered on the provider's schedule")
        if not delivery_method_enabled(schedule, delivery_method):
            raise SlotUnavailableError(f"Delivery method {delivery_method} is not offered by this provider")

        windows = resolve_day_windows(schedule, day)
        if not windows:
            override = next((item for item in schedule.date_overrides if item.date == day.isoformat()), None)
            if override is not None:
                raise SlotUnavailableError("This date has been blocked by the provider")
            raise SlotUnavailableError(f"Provider is not available on {DAY_NAMES[weekday_index(day)]}s")
        if not any(
            datetime.combine(day, window_start) <= start_local and end_local <= window_limit(day, window_end)
            for window_start, window_end in windows
        ):
            raise SlotUnavailableError("Requested time is outside the provider's available hours")
        if not wall_time_exists(day, start, tz):
            raise SlotUnavailableError("Requested time does not exist in the provider's timezone")

        start_utc = start_local.replace(tzinfo=tz).astimezone(timezone.utc)
        end_utc = end_local.replace(tzinfo=tz).astimezone(timezone.utc)
        if start_utc < now + timedelta(hours=schedule.minimum_notice_hours):
            raise SlotUnavailableError(
                f"Bookings need at least {schedule.minimum_notice_hours} hours notice"
            )
        if start_utc > now + timedelta(days=schedule.advance_booking_days):
            raise SlotUnavailableError(
                f"Bookings can be made at most {schedule.advance_booking_days} days in advance"
            )

        candidate = TimeRange(start_utc, end_utc)
        existing = self.store.list_active_for_provider(
            schedule.provider_id, start_utc, end_utc, buffer_minutes=schedule.buffer_minutes
        )
        if find_conflict(candidate, existing, schedule.buffer_minutes, ignore_booking_id=ignore_booking_id):
            raise SlotUnavailableError("The requested time conflicts with an existing booking")
        return day, start_local.strftime("%H:%M"), expected_end, start_utc, end_utc

    def _validate_mobile_address(self, schedule: ProviderSchedule, address: Optional[Place]) -> None:
        if address is None or not address.formatted_address.strip():
            raise SchedulingValidationError("Mobile bookings need a customer address")
        mobile = schedule.delivery_methods.mobile
        base = mobile.base_location
        if (
            mobile.service_radius_km is None
            or base is None
            or base.latitude is None
            or base.longitude is None
            or address.latitude is None
            or address.longitude is None
        ):
            return
        distance = _haversine_km(base.latitude, base.longitude, address.latitude, address.longitude)
        if distance > mobile.service_radius_km:
            raise SlotUnavailableError(
                f"Address is {distance:.1f} km away; the provider travels up to {mobile.service_radius_km:g} km"
            )

    # Lifecycle

    def create_booking(self, request: BookingRequest) -> Booking:
        now = self.clock.now()
        schedule = self._require_schedule(request.provider_id)
        service = self._require_service(request.provider_id, request.service_id)
        if request.customer_id == request.provider_id:
            raise SchedulingValidationError("Providers cannot book their own services")
        if request.customer_timezone:
            load_timezone(request.customer_timezone)
        if request.delivery_method == "MOBILE":
            self._validate_mobile_address(schedule, request.customer_address)
        day, start_time, end_time, start_utc, end_utc = self._validate_requested_time(
            schedule,
            service,
            request.date,
            request.start_time,
            request.delivery_method,
            now,
            end_time=request.end_time,
        )
        quote = quote_price(service, schedule, request.delivery_method, request.add_on_ids, self.fees)

        booking_id = f"bkg_{uuid4().hex[:12]}"
        try:
            authorization = self.gateway.authorize(
                quote.amount_minor,
                quote.currency,
                {
                    "booking_id": booking_id,
                    "provider_id": request.provider_id,
                    "customer_id": request.customer_id,
                    "service_id": service.id,
                },
                idempotency_key=f"authorize_{booking_id}",
                application_fee_minor=quote.platform_fee_minor,
            )
        except PaymentGatewayError as exc:
            raise PaymentError(exc.reason) from exc

        booking = Booking(
            id=booking_id,
            provider_id=request.provider_id,
            service_id=service.id,
            customer_id=request.customer_id,
            date=day.isoformat(),
            start_time=start_time,
            end_time=end_time,
            start_utc=start_utc,
            end_utc=end_utc,
            provider_timezone=schedule.timezone,
            customer_timezone=request.customer_timezone,
            delivery_method=request.delivery_method,
            confirmation_status=PENDING,
            confirmation_deadline=now + self.confirmation_window,
            payment_intent_id=authorization.reference,
            amount=quote.amount,
            currency=quote.currency,
            platform_fee_cents=quote.platform_fee_minor,
            add_on_ids=quote.add_on_ids,
            customer_address=request.customer_address if request.delivery_method == "MOBILE" else None,
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.insert_booking_if_free(booking, schedule.buffer_minutes, actor=request.customer_id)
        except SlotUnavailableError:
            self._release_quietly(booking, reason="slot taken before insert")
            raise

        logger.info("Booking %s created for provider %s at %s", booking.id, booking.provider_id, booking.start_utc)
        self._notify(
            "booking-pending-provider",
            booking.provider_id,
            booking,
            service=service,
            deadline=booking.confirmation_deadline.isoformat(),
        )
        return booking

    def confirm_booking(self, booking_id: str, request: BookingConfirmRequest) -> Booking:
        booking = self._require_booking(booking_id)
        if request.actor_user_id != booking.provider_id:
            raise SchedulingPermissionError("Only the provider can confirm this booking")
        if booking.confirmation_status != PENDING:
            raise StateConflictError(f"Cannot confirm a booking that is {booking.confirmation_status.value}")
        now = self.clock.now()
        if now > booking.confirmation_deadline:
            try:
                self._expire(booking, now)
            except StateConflictError:
                logger.info("Booking %s changed while expiring on confirm", booking.id)
            raise StateConflictError("The confirmation deadline for this booking has passed")

        try:
            self.gateway.capture(booking.payment_intent_id, idempotency_key=f"capture_{booking.id}")
        except PaymentGatewayError as exc:
            raise PaymentError(exc.reason) from exc

        schedule = self.store.get_schedule(booking.provider_id)
        changes: Dict[str, Any] = {"confirmed_at": now, "updated_at": now}
        if booking.delivery_method == "AT_PROVIDER_LOCATION" and schedule is not None:
            location = schedule.delivery_methods.at_provider_location.location
            if location is not None:
                changes["provider_address"] = location.formatted_address
        if booking.delivery_method == "ONLINE":
            default_link = schedule.delivery_methods.online.default_meeting_link if schedule else None
            changes["meeting_link"] = request.meeting_link or default_link
            changes["meeting_passcode"] = request.meeting_passcode

        try:
            confirmed = self.store.transition_booking(
                booking.id, PENDING, CONFIRMED, changes, actor=request.actor_user_id, note="provider confirmed"
            )
        except StateConflictError:
            self._compensate_capture(booking)
            raise

        logger.info("Booking %s: %s -> %s", booking.id, PENDING.value, CONFIRMED.value)
        self._notify("booking-confirmed-customer", confirmed.customer_id, confirmed)
        self._notify("booking-confirmed-provider", confirmed.provider_id, confirmed)
        return confirmed

    def _compensate_capture(self, booking: Booking) -> None:
        current = self.store.get_booking(booking.id)
        if current is None or current.confirmation_status == CONFIRMED:
            return
        # Captured, but another caller already released or cancelled the booking.
        logger.error(
            "Booking %s captured after moving to %s; refunding", booking.id, current.confirmation_status.value
        )
        try:
            self.gateway.refund(
                booking.payment_intent_id,
                to_minor_units(booking.amount, booking.currency),
                idempotency_key=f"compensate_{booking.id}",
            )
        except PaymentGatewayError:
            logger.exception("Compensating refund failed for booking %s", booking.id)

    def reject_booking(self, booking_id: str, request: BookingRejectRequest) -> Booking:
        booking = self._require_booking(booking_id)
        if request.actor_user_id != booking.provider_id:
            raise SchedulingPermissionError("Only the provider can reject this booking")
        if booking.confirmation_status != PENDING:
            raise StateConflictError(f"Cannot reject a booking that is {booking.confirmation_status.value}")
        now = self.clock.now()
        self._release_quietly(booking, reason="rejected")
        rejected = self.store.transition_booking(
            booking.id,
            PENDING,
            BookingLifecycleState.REJECTED,
            {"rejected_at": now, "rejection_reason": request.reason or None, "updated_at": now},
            actor=request.actor_user_id,
            note=request.reason or "provider rejected",
        )
        logger.info("Booking %s: %s -> %s", booking.id, PENDING.value, rejected.confirmation_status.value)
        self._notify("booking-rejected-customer", rejected.customer_id, rejected, reason=request.reason)
        return rejected

    def _expire(self, booking: Booking, now: datetime) -> Booking:
        self._release_quietly(booking, reason="expired")
        expired = self.store.transition_booking(
            booking.id,
            PENDING,
            BookingLifecycleState.EXPIRED,
            {"expired_at": now, "updated_at": now},
            actor=SYSTEM_ACTOR,
            note="confirmation deadline passed",
        )
        logger.info("Booking %s: %s -> %s", booking.id, PENDING.value, expired.confirmation_status.value)
        self._notify("booking-expired-customer", expired.customer_id, expired)
        self._notify("booking-expired-provider", expired.provider_id, expired)
        return expired

    def expire_booking(self, booking_id: str) -> Booking:
        booking = self._require_booking(booking_id)
        if booking.confirmation_status != PENDING:
            raise StateConflictError(f"Cannot expire a booking that is {booking.confirmation_status.value}")
        now = self.clock.now()
        if now <= booking.confirmation_deadline:
            raise StateConflictError("The confirmation deadline has not passed yet")
        return self._expire(booking, now)

    def expire_overdue_bookings(self) -> ExpirySweepResult:
        now = self.clock.now()
        result = ExpirySweepResult()
        for booking in self.store.list_overdue_pending(now):
            try:
                self._expire(booking, now)
                result.expired_booking_ids.append(booking.id)
            except (StateConflictError, SchedulingNotFoundError):
                logger.info("Skipping booking %s during expiry sweep; it changed concurrently", booking.id)
                result.skipped_booking_ids.append(booking.id)
        if result.expired_booking_ids:
            logger.info("Expired %d overdue bookings", len(result.expired_booking_ids))
        return result

    def cancel_booking(self, booking_id: str, request: BookingCancelRequest) -> Booking:
        booking = self._require_booking(booking_id)
        if request.actor_user_id == booking.customer_id:
            cancelled_by = "CUSTOMER"
        elif request.actor_user_id == booking.provider_id:
            cancelled_by = "PROVIDER"
        else:
            raise SchedulingPermissionError("Only the customer or the provider can cancel this booking")
        status = booking.confirmation_status
        if status not in ACTIVE_BOOKING_STATES:
            raise StateConflictError(f"Cannot cancel a booking that is {status.value}")
        now = self.clock.now()
        changes: Dict[str, Any] = {
            "cancelled_at": now,
            "cancelled_by": cancelled_by,
            "cancellation_reason": request.reason or None,
            "updated_at": now,
        }

        if status == PENDING:
            self._release_quietly(booking, reason="cancelled before confirmation")
        else:
            refund = self._refund_for(booking, cancelled_by, now)
            if refund.amount > 0:
                try:
                    self.gateway.refund(
                        booking.payment_intent_id,
                        to_minor_units(refund.amount, booking.currency),
                        idempotency_key=f"refund_{booking.id}",
                    )
                except PaymentGatewayError as exc:
                    raise PaymentError(exc.reason) from exc
            changes["refund_amount"] = refund.amount
            changes["refund_percentage"] = refund.percentage

        cancelled = self.store.transition_booking(
            booking.id,
            status,
            BookingLifecycleState.CANCELLED,
            changes,
            actor=request.actor_user_id,
            note=request.reason or f"cancelled by {cancelled_by.lower()}",
        )
        logger.info("Booking %s: %s -> %s", booking.id, status.value, cancelled.confirmation_status.value)
        if cancelled_by == "CUSTOMER":
            self._notify("booking-cancelled-provider", cancelled.provider_id, cancelled, reason=request.reason)
        else:
            self._notify("booking-cancelled-customer", cancelled.customer_id, cancelled, reason=request.reason)
        return cancelled

    def _refund_for(self, booking: Booking, cancelled_by: str, now: datetime) -> RefundCalculation:
        policy = self._policy_for(booking)
        if cancelled_by == "PROVIDER":
            return RefundCalculation(
                eligible=booking.amount > 0,
                percentage=100.0,
                amount=round(booking.amount, 2),
                reason="Full refund: cancelled by the provider",
            )
        return calculate_refund(policy, booking.start_utc, booking.amount, now)

    def quote_refund(self, booking_id: str, actor_user_id: str) -> RefundCalculation:
        booking = self._require_booking(booking_id)
        if actor_user_id == booking.customer_id:
            cancelled_by = "CUSTOMER"
        elif actor_user_id == booking.provider_id:
            cancelled_by = "PROVIDER"
        else:
            raise SchedulingPermissionError("Only the customer or the provider can view this booking")
        if booking.confirmation_status == PENDING:
            return RefundCalculation(
                eligible=False,
                percentage=0.0,
                amount=0.0,
                reason="Nothing has been charged yet; the payment hold will be released",
            )
        if booking.confirmation_status != CONFIRMED:
            raise StateConflictError(f"Booking is {booking.confirmation_status.value}")
        return self._refund_for(booking, cancelled_by, self.clock.now())

    def reschedule_booking(self, booking_id: str, request: BookingRescheduleRequest) -> Booking:
        booking = self._require_booking(booking_id)
        if request.actor_user_id != booking.customer_id:
            raise SchedulingPermissionError("Only the customer can reschedule this booking")
        if booking.confirmation_status not in ACTIVE_BOOKING_STATES:
            raise StateConflictError(f"Cannot reschedule a booking that is {booking.confirmation_status.value}")
        now = self.clock.now()
        policy = self._policy_for(booking)
        eligibility = check_reschedule_eligibility(policy, booking.start_utc, booking.reschedule_count, now)
        if not eligibility.eligible:
            raise SlotUnavailableError(eligibility.reason)

        schedule = self._require_schedule(booking.provider_id)
        service = self._require_service(booking.provider_id, booking.service_id)
        day, start_time, end_time, start_utc, end_utc = self._validate_requested_time(
            schedule,
            service,
            request.date,
            request.start_time,
            booking.delivery_method,
            now,
            ignore_booking_id=booking.id,
        )
        updated = self.store.reschedule_booking_if_free(
            booking,
            {
                "date": day.isoformat(),
                "start_time": start_time,
                "end_time": end_time,
                "start_utc": start_utc,
                "end_utc": end_utc,
                "reschedule_count": booking.reschedule_count + 1,
                "last_rescheduled_at": now,
                "reminder_24h_sent": False,
                "reminder_1h_sent": False,
                "updated_at": now,
            },
            schedule.buffer_minutes,
            actor=request.actor_user_id,
        )
        logger.info("Booking %s rescheduled to %s %s", booking.id, updated.date, updated.start_time)
        self._notify("booking-rescheduled-provider", updated.provider_id, updated, service=service)
        return updated

    # Queries

    def get_booking(self, booking_id: str, viewer_id: Optional[str] = None) -> Booking:
        booking = self._require_booking(booking_id)
        if viewer_id is not None and viewer_id not in {booking.customer_id, booking.provider_id}:
            raise SchedulingPermissionError("Only the customer or the provider can view this booking")
        return booking

    def get_booking_history(self, booking_id: str) -> List[BookingHistoryEntry]:
        self._require_booking(booking_id)
        return self.store.list_history(booking_id)

    def list_pending_confirmations(self, provider_id: str) -> List[Booking]:
        return self.store.list_bookings(provider_id=provider_id, statuses=[PENDING])

    def dispatch_reminders(self) -> ReminderDispatchResult:
        now = self.clock.now()
        result = ReminderDispatchResult()
        for flag, template, lower, upper, sent in (
            ("reminder_24h_sent", "booking-reminder-24h", 24, 48, result.reminders_24h),
            ("reminder_1h_sent", "booking-reminder-1h", 1, 2, result.reminders_1h),
        ):
            for booking in self.store.list_confirmed_between(now + timedelta(hours=lower), now + timedelta(hours=upper)):
                if getattr(booking, flag):
                    continue
                try:
                    marked = self.store.patch_booking(booking.id, booking.version, {flag: True, "updated_at": now})
                except StateConflictError:
                    logger.warning("Skipping %s for booking %s; it changed concurrently", template, booking.id)
                    continue
                self._notify(template, marked.customer_id, marked)
                self._notify(template, marked.provider_id, marked)
                sent.append(marked.id)
        return result

    # Side effects

    def _release_quietly(self, booking: Booking, *, reason: str) -> None:
        try:
            self.gateway.release(booking.payment_intent_id, idempotency_key=f"release_{booking.id}")
        except PaymentGatewayError as exc:
            logger.warning("Releasing hold for booking %s (%s) failed: %s", booking.id, reason, exc.reason)

    def _notify(
        self,
        template_id: str,
        recipient: str,
        booking: Booking,
        *,
        service: Optional[ServiceOffering] = None,
        **extra: Any,
    ) -> None:
        try:
            if service is None:
                service = self.store.get_service(booking.service_id)
            variables = {
                "booking_id": booking.id,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "service_name": service.name if service else booking.service_id,
                "date": booking.date,
                "start_time": booking.start_time,
                "end_time": booking.end_time,
                "currency": booking.currency.upper(),
                "refund_amount": booking.refund_amount,
                "meeting_link": booking.meeting_link,
                **extra,
            }
            self.notifier.send(template_id, recipient, variables)
        except Exception:  # notifications never block a transition
            logger.warning("Notification %s for booking %s failed", template_id, booking.id, exc_info=True)


def _load_policy_book() -> PolicyBook:
    if settings.cancellation_policies_path:
        return PolicyBook.from_file(settings.cancellation_policies_path)
    return DEFAULT_POLICY_BOOK


booking_engine = BookingEngine(
    store=scheduling_store,
    gateway=build_payment_gateway(settings.stripe_api_key, settings.stripe_max_network_retries),
    notifier=notification_store,
    policy_book=_load_policy_book(),
    fees=settings.fees,
    schedule_defaults=settings.schedule_defaults,
    confirmation_window_hours=settings.confirmation_window_hours,
    max_slot_query_days=settings.max_slot_query_days,
    default_currency=settings.default_currency,
)
