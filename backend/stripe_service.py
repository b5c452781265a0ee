"""
backend/stripe_service.py

Thin wrapper over the Stripe SDK for booking payments.

Amounts cross this boundary in dollars and are converted to cents here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

try:
    from backend.config import STRIPE_CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
except ModuleNotFoundError:
    from config import STRIPE_CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

logger = logging.getLogger(__name__)


class StripeNotConfigured(RuntimeError):
    pass


class StripeServiceError(RuntimeError):
    pass


class WebhookVerificationError(ValueError):
    pass


def is_configured() -> bool:
    return bool(STRIPE_SECRET_KEY)


def _client_ready() -> None:
    if not STRIPE_SECRET_KEY:
        raise StripeNotConfigured("STRIPE_SECRET_KEY is not configured")
    stripe.api_key = STRIPE_SECRET_KEY


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def from_cents(amount: int) -> float:
    return round(int(amount) / 100.0, 2)


def create_payment_intent(
    amount: float,
    *,
    tenant_id: int,
    booking_id: int,
    payment_type: str,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a PaymentIntent; booking and tenant ride along in metadata so the
    webhook can record the payment without trusting anything else.

    Raises:
        StripeNotConfigured, StripeServiceError
    """
    _client_ready()
    try:
        intent = stripe.PaymentIntent.create(
            amount=to_cents(amount),
            currency=STRIPE_CURRENCY,
            automatic_payment_methods={"enabled": True},
            receipt_email=customer_email or None,
            metadata={
                "tenant_id": str(tenant_id),
                "booking_id": str(booking_id),
                "payment_type": payment_type,
            },
        )
    except stripe.StripeError as e:
        logger.error("[STRIPE] PaymentIntent create failed for booking_id=%s: %s", booking_id, e)
        raise StripeServiceError(str(e)) from e

    logger.info("[STRIPE] PaymentIntent %s created for booking_id=%s", intent["id"], booking_id)
    return {
        "id": intent["id"],
        "client_secret": intent["client_secret"],
        "amount": from_cents(intent["amount"]),
        "currency": intent["currency"],
        "status": intent["status"],
    }


def refund_payment_intent(payment_intent_id: str, amount: Optional[float] = None) -> Dict[str, Any]:
    """Refund all or part of a captured PaymentIntent."""
    _client_ready()
    params: Dict[str, Any] = {"payment_intent": payment_intent_id}
    if amount is not None:
        params["amount"] = to_cents(amount)
    try:
        refund = stripe.Refund.create(**params)
    except stripe.StripeError as e:
        logger.error("[STRIPE] Refund failed for %s: %s", payment_intent_id, e)
        raise StripeServiceError(str(e)) from e

    logger.info("[STRIPE] Refund %s for %s", refund["id"], payment_intent_id)
    return {"id": refund["id"], "amount": from_cents(refund["amount"]), "status": refund["status"]}


def construct_webhook_event(payload: bytes, sig_header: Optional[str]):
    """
    Verify the Stripe-Signature header and parse the event.

    Raises:
        StripeNotConfigured: no webhook secret
        WebhookVerificationError: bad payload or signature
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise StripeNotConfigured("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise WebhookVerificationError("Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        raise WebhookVerificationError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError("Invalid signature") from e
