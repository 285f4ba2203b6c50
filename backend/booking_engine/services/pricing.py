from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List

from booking_engine.models import DeliveryMethod, ProviderSchedule, ServiceOffering
from booking_engine.services.errors import SchedulingValidationError
from booking_engine.settings import FeeConfig

# Currencies charged without a minor unit.
ZERO_DECIMAL_CURRENCIES = {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}


@dataclass(frozen=True)
class PriceQuote:
    amount: float
    currency: str
    amount_minor: int
    platform_fee_minor: int
    add_on_ids: List[str]


def to_minor_units(amount: float, currency: str) -> int:
    exponent = 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2
    scaled = Decimal(str(amount)).scaleb(exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def platform_fee(amount_minor: int, fees: FeeConfig) -> int:
    percent_part = Decimal(amount_minor) * Decimal(str(fees.percent)) / Decimal(100)
    fee = int(percent_part.quantize(Decimal("1"), rounding=ROUND_HALF_UP)) + fees.fixed_cents
    return min(max(fee, 0), amount_minor)


def base_price(service: ServiceOffering) -> float:
    pricing = service.pricing
    if pricing.type == "HOURLY":
        if pricing.rate_per_hour is None:
            raise SchedulingValidationError(f"Service {service.id} has hourly pricing without a rate")
        return pricing.rate_per_hour * service.duration_minutes / 60.0
    if pricing.fixed_price is None:
        raise SchedulingValidationError(f"Service {service.id} has fixed pricing without a price")
    return pricing.fixed_price


def quote_price(
    service: ServiceOffering,
    schedule: ProviderSchedule,
    delivery_method: DeliveryMethod,
    add_on_ids: Iterable[str],
    fees: FeeConfig,
) -> PriceQuote:
    total = Decimal(str(base_price(service)))
    if delivery_method == "MOBILE":
        total += Decimal(str(schedule.delivery_methods.mobile.travel_surcharge or 0))

    add_ons = {item.id: item for item in service.add_ons}
    selected = list(dict.fromkeys(add_on_ids))
    for add_on_id in selected:
        add_on = add_ons.get(add_on_id)
        if add_on is None:
            raise SchedulingValidationError(f"Unknown add-on: {add_on_id}")
        total += Decimal(str(add_on.price))
    # Mandatory add-ons are always charged.
    for add_on in service.add_ons:
        if not add_on.optional and add_on.id not in selected:
            selected.append(add_on.id)
            total += Decimal(str(add_on.price))

    if total < 0:
        raise SchedulingValidationError("Booking price cannot be negative")
    amount = float(total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    currency = service.currency.lower()
    amount_minor = to_minor_units(amount, currency)
    return PriceQuote(
        amount=amount,
        currency=currency,
        amount_minor=amount_minor,
        platform_fee_minor=platform_fee(amount_minor, fees),
        add_on_ids=selected,
    )
