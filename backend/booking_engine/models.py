from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

DeliveryMethod = Literal["ONLINE", "AT_PROVIDER_LOCATION", "MOBILE"]
CancelledBy = Literal["CUSTOMER", "PROVIDER"]


class BookingLifecycleState(str, Enum):
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_BOOKING_STATES = {
    BookingLifecycleState.PENDING_CONFIRMATION,
    BookingLifecycleState.CONFIRMED,
}


class TimeSlot(BaseModel):
    """Availability window in provider-local wall time, ``HH:MM``."""

    start: str
    end: str


class WeekdayConfig(BaseModel):
    day: int = Field(ge=0, le=6, description="0=Sunday ... 6=Saturday")
    enabled: bool = False
    time_slots: list[TimeSlot] = Field(default_factory=list)


class DateOverride(BaseModel):
    date: str
    type: Literal["BLOCKED", "CUSTOM"]
    time_slots: list[TimeSlot] = Field(default_factory=list)
    reason: str = ""


class Place(BaseModel):
    formatted_address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class OnlineDelivery(BaseModel):
    enabled: bool = True
    default_meeting_link: Optional[str] = None


class AtProviderDelivery(BaseModel):
    enabled: bool = False
    location: Optional[Place] = None
    display_area: str = ""


class MobileDelivery(BaseModel):
    enabled: bool = False
    service_radius_km: Optional[float] = None
    travel_surcharge: float = 0.0
    base_location: Optional[Place] = None


class DeliveryMethodConfig(BaseModel):
    online: OnlineDelivery = Field(default_factory=OnlineDelivery)
    at_provider_location: AtProviderDelivery = Field(default_factory=AtProviderDelivery)
    mobile: MobileDelivery = Field(default_factory=MobileDelivery)


class ProviderSchedule(BaseModel):
    provider_id: str
    timezone: str
    weekdays: list[WeekdayConfig]
    date_overrides: list[DateOverride] = Field(default_factory=list)
    service_ids: list[str] = Field(default_factory=list)
    buffer_minutes: int = 15
    minimum_notice_hours: int = 24
    advance_booking_days: int = 30
    delivery_methods: DeliveryMethodConfig = Field(default_factory=DeliveryMethodConfig)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScheduleUpsertRequest(BaseModel):
    actor_user_id: str
    timezone: Optional[str] = None
    weekdays: list[WeekdayConfig] = Field(default_factory=list)
    service_ids: Optional[list[str]] = None
    buffer_minutes: Optional[int] = None
    minimum_notice_hours: Optional[int] = None
    advance_booking_days: Optional[int] = None
    delivery_methods: Optional[DeliveryMethodConfig] = None


class DateOverrideRequest(BaseModel):
    actor_user_id: str
    date: str
    type: Literal["BLOCKED", "CUSTOM"]
    time_slots: list[TimeSlot] = Field(default_factory=list)
    reason: str = ""


class CancellationPolicy(BaseModel):
    type: Literal["FLEXIBLE", "MODERATE", "STRICT", "CUSTOM"] = "CUSTOM"
    full_refund_hours: Optional[float] = None
    partial_refund_hours: Optional[float] = None
    partial_refund_percentage: Optional[float] = None
    no_refund_hours: Optional[float] = None
    allow_rescheduling: bool = True
    max_reschedules: Optional[int] = None
    reschedule_min_hours: float = 0


class ServicePricing(BaseModel):
    type: Literal["FIXED", "HOURLY"] = "FIXED"
    fixed_price: Optional[float] = None
    rate_per_hour: Optional[float] = None


class ServiceAddOn(BaseModel):
    id: str
    name: str
    price: float = 0.0
    optional: bool = True


class ServiceOffering(BaseModel):
    id: str
    provider_id: str
    name: str
    category: str
    duration_minutes: int = 60
    pricing: ServicePricing = Field(default_factory=ServicePricing)
    currency: str = "usd"
    add_ons: list[ServiceAddOn] = Field(default_factory=list)
    cancellation_policy: Optional[CancellationPolicy] = None


class ServiceUpsertRequest(BaseModel):
    actor_user_id: str
    name: str
    category: str
    duration_minutes: int = 60
    pricing: ServicePricing = Field(default_factory=ServicePricing)
    currency: Optional[str] = None
    add_ons: list[ServiceAddOn] = Field(default_factory=list)
    cancellation_policy: Optional[CancellationPolicy] = None


class AvailableSlot(BaseModel):
    start: str
    end: str
    start_utc: datetime
    end_utc: datetime
    customer_date: Optional[str] = None
    customer_start: Optional[str] = None
    customer_end: Optional[str] = None


class AvailableDay(BaseModel):
    date: str
    day_name: str
    slots: list[AvailableSlot]


class BookingRequest(BaseModel):
    customer_id: str
    provider_id: str
    service_id: str
    date: str
    start_time: str
    end_time: Optional[str] = None
    delivery_method: DeliveryMethod = "ONLINE"
    customer_timezone: Optional[str] = None
    customer_address: Optional[Place] = None
    add_on_ids: list[str] = Field(default_factory=list)


class Booking(BaseModel):
    id: str
    provider_id: str
    service_id: str
    customer_id: str
    date: str
    start_time: str
    end_time: str
    start_utc: datetime
    end_utc: datetime
    provider_timezone: str
    customer_timezone: Optional[str] = None
    delivery_method: DeliveryMethod
    confirmation_status: BookingLifecycleState = BookingLifecycleState.PENDING_CONFIRMATION
    confirmation_deadline: datetime
    payment_intent_id: str
    amount: float
    currency: str
    platform_fee_cents: int = 0
    add_on_ids: list[str] = Field(default_factory=list)
    customer_address: Optional[Place] = None
    provider_address: Optional[str] = None
    meeting_link: Optional[str] = None
    meeting_passcode: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_percentage: Optional[float] = None
    reschedule_count: int = 0
    last_rescheduled_at: Optional[datetime] = None
    reminder_24h_sent: bool = False
    reminder_1h_sent: bool = False
    confirmed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class BookingConfirmRequest(BaseModel):
    actor_user_id: str
    meeting_link: Optional[str] = None
    meeting_passcode: Optional[str] = None


class BookingRejectRequest(BaseModel):
    actor_user_id: str
    reason: str = ""


class BookingCancelRequest(BaseModel):
    actor_user_id: str
    reason: str = ""


class BookingRescheduleRequest(BaseModel):
    actor_user_id: str
    date: str
    start_time: str


class RefundCalculation(BaseModel):
    eligible: bool
    percentage: float
    amount: float
    reason: str


class RescheduleEligibility(BaseModel):
    eligible: bool
    reason: str
    reschedule_count: int
    max_reschedules: Optional[int] = None


class ExpirySweepResult(BaseModel):
    expired_booking_ids: list[str] = Field(default_factory=list)
    skipped_booking_ids: list[str] = Field(default_factory=list)


class ReminderDispatchResult(BaseModel):
    reminders_24h: list[str] = Field(default_factory=list)
    reminders_1h: list[str] = Field(default_factory=list)


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    template_id: str
    title: str
    body: str
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str


class BookingHistoryEntry(BaseModel):
    booking_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str
    created_at: str

