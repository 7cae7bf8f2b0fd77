"""
Payment gateway integration (Stripe).

Counterparts pay through a gateway-hosted form backed by a PaymentIntent.
Gateway results come back as signed webhooks; they are verified here and
turned into ``GatewayResult`` records that the settle job applies.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import stripe
from sqlmodel import Session, select

from .config import STRIPE_PUBLISHABLE_KEY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS
from .errors import TransientIOFailure, ValidationError
from .models import Invoice, Payment

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
HANDLED_EVENTS = (SUCCEEDED, FAILED)


@dataclass
class GatewayResult:
    event_id: str
    event_type: str
    invoice_id: int
    transaction_id: str
    amount_cents: int
    currency: str
    succeeded: bool
    failure_reason: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        key = f"settle:{self.invoice_id}:{self.transaction_id}"
        # a failed attempt on an intent may be followed by a successful one
        return key if self.succeeded else f"{key}:failed:{self.event_id}"

    def to_dict(self) -> dict:
        return asdict(self)


def verify_webhook(payload: bytes, signature: Optional[str]) -> dict:
    """Check the ``Stripe-Signature`` header and return the parsed event."""
    if not STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set, rejecting webhook")
        raise ValidationError("webhook verification is not configured")
    if not signature:
        raise ValidationError("missing webhook signature")
    body = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(body, signature, STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as exc:
        logger.warning("webhook signature verification failed: %s", exc)
        raise ValidationError("invalid webhook signature")
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        raise ValidationError("invalid webhook payload")


def to_gateway_result(event: dict) -> Optional[GatewayResult]:
    """Return a result for payment events we act on, None for anything else."""
    event_type = event.get("type")
    if event_type not in HANDLED_EVENTS:
        return None
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    try:
        invoice_id = int(metadata["invoice_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("gateway event %s has no invoice_id metadata", event.get("id"))
        return None
    succeeded = event_type == SUCCEEDED
    error = obj.get("last_payment_error") or {}
    amount = obj.get("amount_received") if succeeded else obj.get("amount")
    return GatewayResult(
        event_id=event["id"],
        event_type=event_type,
        invoice_id=invoice_id,
        transaction_id=obj["id"],
        amount_cents=int(amount or 0),
        currency=obj.get("currency") or "usd",
        succeeded=succeeded,
        failure_reason=None if succeeded else error.get("message") or "payment failed",
    )


def create_payment_intent(session: Session, invoice: Invoice) -> dict:
    """
    Open (or reuse) a PaymentIntent for the invoice's current balance.

    The idempotency key covers the balance, so refreshing the payment page
    returns the same intent until a payment lands.
    """
    if invoice.amount_due_cents <= 0:
        raise ValidationError("invoice has no balance due")
    if not STRIPE_SECRET_KEY:
        raise TransientIOFailure("payment gateway is not configured")
    key = f"invoice-{invoice.id}-due-{invoice.amount_due_cents}-paid-{invoice.amount_paid_cents}"
    try:
        intent = stripe.PaymentIntent.create(
            amount=invoice.amount_due_cents,
            currency=invoice.currency,
            metadata={"invoice_id": str(invoice.id), "tenant_id": str(invoice.tenant_id)},
            description=f"Invoice {invoice.invoice_number}",
            idempotency_key=key,
        )
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        logger.warning("stripe unavailable for invoice %s: %s", invoice.id, exc)
        raise TransientIOFailure("payment gateway unavailable") from exc
    except stripe.StripeError as exc:
        logger.error("stripe rejected payment intent for invoice %s: %s", invoice.id, exc)
        raise TransientIOFailure("payment gateway error") from exc

    existing = session.exec(select(Payment).where(Payment.gateway_intent_id == intent["id"])).first()
    if not existing:
        session.add(Payment(
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            amount_cents=invoice.amount_due_cents,
            currency=invoice.currency,
            gateway_intent_id=intent["id"],
        ))
        session.commit()
    logger.info("payment intent %s for invoice %s amount=%s", intent["id"], invoice.id, invoice.amount_due_cents)
    return {
        "payment_intent_id": intent["id"],
        "client_secret": intent["client_secret"],
        "publishable_key": STRIPE_PUBLISHABLE_KEY,
        "amount_cents": invoice.amount_due_cents,
        "currency": invoice.currency,
    }
