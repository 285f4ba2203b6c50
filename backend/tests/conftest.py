import os
import sys
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("BOOKING_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="booking-tests-"), "booking.sqlite3"))

from booking_engine.models import (  # noqa: E402
    AtProviderDelivery,
    DeliveryMethodConfig,
    MobileDelivery,
    OnlineDelivery,
    Place,
    ScheduleUpsertRequest,
    ServicePricing,
    ServiceUpsertRequest,
    TimeSlot,
    WeekdayConfig,
)
from booking_engine.services.clock import FixedClock  # noqa: E402
from booking_engine.services.engine import BookingEngine  # noqa: E402
from booking_engine.services.payment_gateway import (  # noqa: E402
    PaymentAuthorization,
    PaymentGateway,
    PaymentGatewayError,
)
from booking_engine.services.schedule_store import SchedulingStore  # noqa: E402
from booking_engine.settings import FeeConfig  # noqa: E402

PROVIDER = "prov_1"
CUSTOMER = "cust_1"
SERVICE = "svc_reading"
# Monday 2026-03-02 07:00 in New York.
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
BOOKING_DATE = "2026-03-04"


class RecordingGateway(PaymentGateway):
    configured = True

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail: Dict[str, str] = {}
        self._counter = 0

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail:
            raise PaymentGatewayError(self.fail[operation])

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def authorize(self, amount_minor, currency, metadata, *, idempotency_key, application_fee_minor=0):
        self.calls.append(("authorize", amount_minor, currency, idempotency_key))
        self._maybe_fail("authorize")
        self._counter += 1
        return PaymentAuthorization(
            reference=f"pi_test_{self._counter}",
            amount_minor=amount_minor,
            currency=currency,
            status="requires_capture",
        )

    def capture(self, reference, *, idempotency_key):
        self.calls.append(("capture", reference, idempotency_key))
        self._maybe_fail("capture")

    def release(self, reference, *, idempotency_key):
        self.calls.append(("release", reference, idempotency_key))
        self._maybe_fail("release")

    def refund(self, reference, amount_minor, *, idempotency_key):
        self.calls.append(("refund", reference, amount_minor, idempotency_key))
        self._maybe_fail("refund")
        return f"re_{reference}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    def send(self, template_id: str, recipient: str, variables: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append({"template_id": template_id, "recipient": recipient, "variables": dict(variables)})

    def templates_for(self, recipient: str) -> List[str]:
        return [item["template_id"] for item in self.sent if item["recipient"] == recipient]


def schedule_request(**overrides: Any) -> ScheduleUpsertRequest:
    workday = [TimeSlot(start="09:00", end="17:00")]
    payload: Dict[str, Any] = {
        "actor_user_id": PROVIDER,
        "timezone": "America/New_York",
        "weekdays": [
            WeekdayConfig(day=0, enabled=False),
            WeekdayConfig(day=1, enabled=False),
            WeekdayConfig(day=2, enabled=True, time_slots=workday),
            WeekdayConfig(day=3, enabled=True, time_slots=workday),
            WeekdayConfig(day=4, enabled=True, time_slots=workday),
            WeekdayConfig(day=5, enabled=True, time_slots=workday),
            WeekdayConfig(day=6, enabled=False),
        ],
        "buffer_minutes": 15,
        "minimum_notice_hours": 24,
        "advance_booking_days": 30,
        "delivery_methods": DeliveryMethodConfig(
            online=OnlineDelivery(enabled=True, default_meeting_link="https://meet.example.com/prov_1"),
            at_provider_location=AtProviderDelivery(
                enabled=True,
                location=Place(formatted_address="12 Quiet Lane, Brooklyn", latitude=40.6782, longitude=-73.9442),
                display_area="Brooklyn",
            ),
            mobile=MobileDelivery(
                enabled=True,
                service_radius_km=20,
                travel_surcharge=25,
                base_location=Place(formatted_address="Brooklyn", latitude=40.6782, longitude=-73.9442),
            ),
        ),
    }
    payload.update(overrides)
    return ScheduleUpsertRequest(**payload)


def service_request(**overrides: Any) -> ServiceUpsertRequest:
    payload: Dict[str, Any] = {
        "actor_user_id": PROVIDER,
        "name": "Tarot Reading",
        "category": "reading",
        "duration_minutes": 60,
        "pricing": ServicePricing(type="FIXED", fixed_price=100.0),
    }
    payload.update(overrides)
    return ServiceUpsertRequest(**payload)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path) -> SchedulingStore:
    return SchedulingStore(db_path=str(tmp_path / "booking.sqlite3"))


@pytest.fixture
def engine(store, gateway, notifier, clock) -> BookingEngine:
    return BookingEngine(
        store=store,
        gateway=gateway,
        notifier=notifier,
        clock=clock,
        fees=FeeConfig(percent=10.0, fixed_cents=30),
        confirmation_window_hours=24,
    )


@pytest.fixture
def seeded_engine(engine) -> BookingEngine:
    engine.set_schedule(PROVIDER, schedule_request())
    engine.upsert_service(PROVIDER, SERVICE, service_request())
    return engine


def booking_payload(start_time: str = "10:00", booking_date: str = BOOKING_DATE, **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "customer_id": CUSTOMER,
        "provider_id": PROVIDER,
        "service_id": SERVICE,
        "date": booking_date,
        "start_time": start_time,
        "delivery_method": "ONLINE",
        "customer_timezone": "Europe/London",
    }
    payload.update(overrides)
    return payload


def optional_place(latitude: Optional[float], longitude: Optional[float]) -> Place:
    return Place(formatted_address="Customer home", latitude=latitude, longitude=longitude)
