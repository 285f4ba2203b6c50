"""Manual-capture payment holds backed by Stripe PaymentIntents.

Every mutating call carries an idempotency key so a retried ``confirm`` or
``cancel`` never charges or refunds twice.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    """Raised by gateway adapters; ``reason`` is safe to show to the caller."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class PaymentAuthorization:
    reference: str
    amount_minor: int
    currency: str
    status: str


class PaymentGateway:
    """Contract used by the booking engine."""

    configured = False

    def authorize(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        *,
        idempotency_key: str,
        application_fee_minor: int = 0,
    ) -> PaymentAuthorization:
        raise NotImplementedError

    def capture(self, reference: str, *, idempotency_key: str) -> None:
        raise NotImplementedError

    def release(self, reference: str, *, idempotency_key: str) -> None:
        raise NotImplementedError

    def refund(self, reference: str, amount_minor: int, *, idempotency_key: str) -> str:
        raise NotImplementedError


class StripePaymentGateway(PaymentGateway):
    def __init__(self, api_key: str, max_network_retries: int = 2):
        self._api_key = api_key.strip()
        self.configured = bool(self._api_key)
        stripe.max_network_retries = max_network_retries

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        if not self.configured:
            raise PaymentGatewayError("Payment gateway is not configured")
        try:
            return func(*args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
            logger.warning("Stripe %s failed: %s", operation, message)
            raise PaymentGatewayError(message) from exc

    def authorize(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        *,
        idempotency_key: str,
        application_fee_minor: int = 0,
    ) -> PaymentAuthorization:
        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {**metadata, "platform_fee_minor": str(application_fee_minor)},
        }
        intent = self._call(
            "authorize",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )
        logger.info("Created payment hold %s for %s %s", intent.id, amount_minor, currency)
        return PaymentAuthorization(
            reference=intent.id,
            amount_minor=amount_minor,
            currency=currency,
            status=str(intent.status),
        )

    def capture(self, reference: str, *, idempotency_key: str) -> None:
        self._call("capture", stripe.PaymentIntent.capture, reference, idempotency_key=idempotency_key)

    def release(self, reference: str, *, idempotency_key: str) -> None:
        self._call("release", stripe.PaymentIntent.cancel, reference, idempotency_key=idempotency_key)

    def refund(self, reference: str, amount_minor: int, *, idempotency_key: str) -> str:
        refund = self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=reference,
            amount=amount_minor,
            idempotency_key=idempotency_key,
        )
        return str(refund.id)


def build_payment_gateway(api_key: Optional[str], max_network_retries: int = 2) -> StripePaymentGateway:
    return StripePaymentGateway(api_key or "", max_network_retries=max_network_retries)
