"""
Stripe Event Normalizer
=======================

Turns a raw, signed Stripe webhook body into one typed billing event.

Verification runs over the exact bytes Stripe sent, before anything is
parsed, and rejects stale timestamps to bound replay. Only after that is the
body decoded and classified by its ``type`` into the closed set in
``app.schemas.billing``. Types without a transition come back as
``UnhandledEvent`` so new Stripe event types are acknowledged, not rejected.
"""

import json
import logging
from typing import Any, Optional, Type, TypeVar

import stripe
from pydantic import BaseModel, ValidationError

from app.schemas.billing import (
    BillingEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpserted,
    UnhandledEvent,
)
from app.schemas.stripe import (
    CustomerField,
    StripeEventEnvelope,
    StripeInvoice,
    StripeSubscription,
    customer_id_of,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class StripeEventNormalizer:
    """Verifies and classifies Stripe webhook deliveries."""

    def __init__(self, webhook_secret: str, tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: Optional[str]) -> str:
        """
        Check the ``Stripe-Signature`` header against the raw body.

        Args:
            payload: Request body exactly as received.
            signature_header: Value of the ``Stripe-Signature`` header.

        Returns:
            The verified body as text.

        Raises:
            SignatureInvalidError: Missing or unparsable header, signature
                mismatch, timestamp outside the tolerance window, or a body
                that cannot be the signed text.
        """
        if not signature_header:
            raise SignatureInvalidError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalidError("Payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self.webhook_secret,
                tolerance=self.tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed: %s", exc)
            raise SignatureInvalidError(
                "Webhook signature verification failed"
            ) from exc

        return body

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def normalize(self, payload: bytes, signature_header: Optional[str]) -> BillingEvent:
        """Verify ``payload`` and return the typed event it carries."""
        body = self.verify(payload, signature_header)

        try:
            raw = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedEventError("Payload is not valid JSON") from exc

        return self.classify(raw)

    def classify(self, raw: Any) -> BillingEvent:
        """Map an already-verified event body onto a typed event."""
        envelope = _parse(StripeEventEnvelope, raw, "event")
        event_type = envelope.type
        obj = envelope.data.object

        if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            return self._subscription_upserted(envelope.id, event_type, obj)

        if event_type == SUBSCRIPTION_DELETED:
            subscription = _parse(StripeSubscription, obj, event_type)
            return SubscriptionDeleted(
                event_id=envelope.id,
                customer_id=_require_customer(subscription.customer, event_type),
            )

        if event_type == INVOICE_PAID:
            return self._invoice_paid(envelope.id, event_type, obj)

        if event_type == INVOICE_PAYMENT_FAILED:
            invoice = _parse(StripeInvoice, obj, event_type)
            return InvoicePaymentFailed(
                event_id=envelope.id,
                customer_id=_require_customer(invoice.customer, event_type),
                billing_reason=invoice.billing_reason,
            )

        return UnhandledEvent(event_id=envelope.id, raw_type=event_type)

    @staticmethod
    def _subscription_upserted(
        event_id: Optional[str],
        event_type: str,
        obj: dict[str, Any],
    ) -> SubscriptionUpserted:
        subscription = _parse(StripeSubscription, obj, event_type)
        customer_id = _require_customer(subscription.customer, event_type)

        items = subscription.items.data
        first_item = items[0] if items else None
        if first_item is None or first_item.price is None:
            raise MalformedEventError(
                f"{event_type} for subscription {subscription.id} has no price on its first item"
            )

        current_period_end = subscription.current_period_end
        if current_period_end is None:
            current_period_end = first_item.current_period_end
        if current_period_end is None:
            raise MalformedEventError(
                f"{event_type} for subscription {subscription.id} has no current_period_end"
            )

        return SubscriptionUpserted(
            event_id=event_id,
            customer_id=customer_id,
            subscription_id=subscription.id,
            price_id=first_item.price.id,
            status=subscription.status,
            current_period_end=current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            trial_end=subscription.trial_end,
        )

    @staticmethod
    def _invoice_paid(
        event_id: Optional[str],
        event_type: str,
        obj: dict[str, Any],
    ) -> InvoicePaid:
        invoice = _parse(StripeInvoice, obj, event_type)
        if not invoice.id:
            raise MalformedEventError(f"{event_type} has no invoice id")
        if invoice.created is None:
            raise MalformedEventError(f"{event_type} for invoice {invoice.id} has no created time")

        return InvoicePaid(
            event_id=event_id,
            customer_id=_require_customer(invoice.customer, event_type),
            invoice_id=invoice.id,
            status=invoice.status,
            currency=invoice.currency,
            amount_paid=invoice.amount_paid,
            hosted_invoice_url=invoice.hosted_invoice_url,
            invoice_pdf=invoice.invoice_pdf,
            created=invoice.created,
        )


def _parse(model: Type[M], raw: Any, what: str) -> M:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(loc) for loc in first.get("loc", ()))
        raise MalformedEventError(
            f"Invalid {what} payload at '{location}': {first.get('msg', 'invalid')}"
        ) from exc


def _require_customer(customer: Optional[CustomerField], event_type: str) -> str:
    customer_id = customer_id_of(customer)
    if not customer_id:
        raise MalformedEventError(f"{event_type} has no customer")
    return customer_id


# =============================================================================
# Custom Exceptions
# =============================================================================

class SignatureInvalidError(Exception):
    """Raised when a delivery cannot be authenticated as coming from Stripe."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MalformedEventError(Exception):
    """Raised when a verified delivery does not have the shape we rely on."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
