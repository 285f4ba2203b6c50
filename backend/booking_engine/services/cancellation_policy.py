"""Refund and reschedule rules for cancellable bookings.

Tier precedence for ``calculate_refund`` is fixed:

1. at or before ``appointment - full_refund_hours``      -> 100%
2. at or before ``appointment - partial_refund_hours``   -> partial percentage (50 when unset)
3. within ``no_refund_hours`` of the appointment         -> 0%
4. appointment already started                           -> 0%
5. nothing matched                                       -> 100%

Step 5 means a policy with a hole between its windows refunds in full
rather than silently keeping the customer's money.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from booking_engine.models import (
    CancellationPolicy,
    RefundCalculation,
    RescheduleEligibility,
    ServiceOffering,
)
from booking_engine.services.errors import PolicyMissingError, SchedulingValidationError

logger = logging.getLogger(__name__)

DEFAULT_PARTIAL_REFUND_PERCENTAGE = 50.0

POLICY_PRESETS: Dict[str, CancellationPolicy] = {
    "FLEXIBLE": CancellationPolicy(
        type="FLEXIBLE",
        full_refund_hours=24,
        no_refund_hours=24,
        allow_rescheduling=True,
        max_reschedules=3,
        reschedule_min_hours=4,
    ),
    "MODERATE": CancellationPolicy(
        type="MODERATE",
        full_refund_hours=48,
        partial_refund_hours=24,
        partial_refund_percentage=50,
        no_refund_hours=24,
        allow_rescheduling=True,
        max_reschedules=2,
        reschedule_min_hours=24,
    ),
    "STRICT": CancellationPolicy(
        type="STRICT",
        full_refund_hours=168,
        partial_refund_hours=72,
        partial_refund_percentage=50,
        no_refund_hours=72,
        allow_rescheduling=True,
        max_reschedules=1,
        reschedule_min_hours=72,
    ),
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _hours_until(appointment_time: datetime, now: datetime) -> float:
    return (_as_utc(appointment_time) - _as_utc(now)).total_seconds() / 3600.0


def calculate_refund(
    policy: CancellationPolicy,
    appointment_time: datetime,
    paid_amount: float,
    now: datetime,
) -> RefundCalculation:
    hours_until = _hours_until(appointment_time, now)

    if policy.full_refund_hours is not None and hours_until >= policy.full_refund_hours:
        percentage = 100.0
        reason = f"Full refund: cancelled at least {policy.full_refund_hours:g} hours before the appointment"
    elif policy.partial_refund_hours is not None and hours_until >= policy.partial_refund_hours:
        percentage = float(
            policy.partial_refund_percentage
            if policy.partial_refund_percentage is not None
            else DEFAULT_PARTIAL_REFUND_PERCENTAGE
        )
        reason = (
            f"Partial refund of {percentage:g}%: cancelled at least "
            f"{policy.partial_refund_hours:g} hours before the appointment"
        )
    elif policy.no_refund_hours is not None and 0 <= hours_until <= policy.no_refund_hours:
        percentage = 0.0
        reason = f"No refund: cancelled within {policy.no_refund_hours:g} hours of the appointment"
    elif hours_until < 0:
        percentage = 0.0
        reason = "No refund: the appointment has already passed"
    else:
        percentage = 100.0
        reason = "Full refund: no cancellation window defined"

    amount = round(max(paid_amount, 0) * percentage / 100.0, 2)
    return RefundCalculation(
        eligible=percentage > 0 and amount > 0,
        percentage=percentage,
        amount=amount,
        reason=reason,
    )


def check_reschedule_eligibility(
    policy: CancellationPolicy,
    appointment_time: datetime,
    current_count: int,
    now: datetime,
) -> RescheduleEligibility:
    def result(eligible: bool, reason: str) -> RescheduleEligibility:
        return RescheduleEligibility(
            eligible=eligible,
            reason=reason,
            reschedule_count=current_count,
            max_reschedules=policy.max_reschedules,
        )

    if not policy.allow_rescheduling:
        return result(False, "Rescheduling is not allowed for this service")
    if policy.max_reschedules is not None and current_count >= policy.max_reschedules:
        return result(False, f"Maximum reschedules ({policy.max_reschedules}) reached")
    hours_until = _hours_until(appointment_time, now)
    if hours_until < 0:
        return result(False, "The appointment has already passed")
    if hours_until < policy.reschedule_min_hours:
        return result(
            False,
            f"Rescheduling requires at least {policy.reschedule_min_hours:g} hours notice",
        )
    return result(True, "Booking can be rescheduled")


@dataclass
class PolicyBook:
    """Cancellation policies keyed by service category.

    Built once by the caller and handed to the engine; the engine never
    re-reads configuration per request.
    """

    by_category: Dict[str, CancellationPolicy] = field(default_factory=dict)
    default: Optional[CancellationPolicy] = None

    def resolve(self, service: ServiceOffering) -> CancellationPolicy:
        if service.cancellation_policy is not None:
            return service.cancellation_policy
        policy = self.by_category.get(service.category.strip().lower())
        if policy is not None:
            return policy
        if self.default is not None:
            return self.default
        raise PolicyMissingError(f"No cancellation policy configured for service {service.id}")

    @classmethod
    def from_mapping(cls, raw: Dict[str, object]) -> "PolicyBook":
        by_category: Dict[str, CancellationPolicy] = {}
        default: Optional[CancellationPolicy] = None
        for key, value in raw.items():
            if isinstance(value, str):
                preset = POLICY_PRESETS.get(value.strip().upper())
                if preset is None:
                    raise SchedulingValidationError(f"Unknown cancellation policy preset: {value}")
                policy = preset
            elif isinstance(value, dict):
                policy = CancellationPolicy(**value)
            else:
                raise SchedulingValidationError(f"Invalid cancellation policy for {key!r}")
            if key == "*":
                default = policy
            else:
                by_category[key.strip().lower()] = policy
        return cls(by_category=by_category, default=default)

    @classmethod
    def from_file(cls, path: str) -> "PolicyBook":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise SchedulingValidationError("Cancellation policy file must contain a JSON object")
        book = cls.from_mapping(raw)
        logger.info("Loaded %d cancellation policies from %s", len(book.by_category), path)
        return book


DEFAULT_POLICY_BOOK = PolicyBook(
    by_category={
        "reading": POLICY_PRESETS["FLEXIBLE"],
        "healing": POLICY_PRESETS["MODERATE"],
        "coaching": POLICY_PRESETS["MODERATE"],
    }
)
