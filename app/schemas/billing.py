"""
Billing Schemas
===============

Typed billing state stored on a user record, and the closed set of
normalized Stripe events the reconciler understands.

Embedded documents (``subscription`` and each ``invoices`` entry) are stored
camelCased, the shape the web client reads them in.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.user import Plan


# Statuses that grant the pro plan
PRO_STATUSES = frozenset({"active", "trialing"})

# invoice.payment_failed only downgrades when the very first invoice fails
TRIAL_FAILURE_BILLING_REASON = "subscription_create"


def plan_for_status(status: str) -> Plan:
    """Derive the plan purely from a Stripe subscription status."""
    return Plan.PRO if status in PRO_STATUSES else Plan.FREE


class _Document(BaseModel):
    """Immutable embedded document with camelCase storage keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_document(self) -> dict:
        """Serialize for storage on the user record."""
        return self.model_dump(by_alias=True)


# ─── Stored state ────────────────────────────────────────────────────────────


class SubscriptionState(_Document):
    """Subscription snapshot; replaced wholesale, never merged."""

    subscription_id: str
    price_id: str
    status: str
    current_period_end: int
    cancel_at_period_end: bool = False
    trial_end: Optional[int] = None


class InvoiceRecord(_Document):
    """Paid invoice metadata, keyed by invoice id on the user record."""

    status: Optional[str] = None
    currency: Optional[str] = None
    amount_paid: int = 0
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    created: int


class UserRecord(BaseModel):
    """
    The billing-relevant view of a user row.

    ``subscription`` and ``invoices`` hold the stored documents as-is. They
    are compared against and overlaid with ``to_document()`` output, never
    re-validated, so entries no event touches pass through unchanged.
    """

    user_id: str
    customer_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    plan: Plan = Plan.FREE
    subscription: Optional[dict[str, Any]] = None
    invoices: dict[str, Any] = Field(default_factory=dict)


# ─── Normalized events ───────────────────────────────────────────────────────


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: Optional[str] = None


class SubscriptionUpserted(_Event):
    """customer.subscription.created / customer.subscription.updated"""

    kind: Literal["subscription_upserted"] = "subscription_upserted"
    customer_id: str
    subscription_id: str
    price_id: str
    status: str
    current_period_end: int
    cancel_at_period_end: bool = False
    trial_end: Optional[int] = None

    def to_state(self) -> SubscriptionState:
        return SubscriptionState(
            subscription_id=self.subscription_id,
            price_id=self.price_id,
            status=self.status,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            trial_end=self.trial_end,
        )


class SubscriptionDeleted(_Event):
    """customer.subscription.deleted"""

    kind: Literal["subscription_deleted"] = "subscription_deleted"
    customer_id: str


class InvoicePaid(_Event):
    """invoice.paid"""

    kind: Literal["invoice_paid"] = "invoice_paid"
    customer_id: str
    invoice_id: str
    status: Optional[str] = None
    currency: Optional[str] = None
    amount_paid: int = 0
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    created: int

    def to_record(self) -> InvoiceRecord:
        return InvoiceRecord(
            status=self.status,
            currency=self.currency,
            amount_paid=self.amount_paid,
            hosted_invoice_url=self.hosted_invoice_url,
            invoice_pdf=self.invoice_pdf,
            created=self.created,
        )


class InvoicePaymentFailed(_Event):
    """invoice.payment_failed"""

    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    customer_id: str
    billing_reason: Optional[str] = None


class UnhandledEvent(_Event):
    """Any event type without a transition; acknowledged and ignored."""

    kind: Literal["unhandled"] = "unhandled"
    raw_type: str


BillingEvent = Union[
    SubscriptionUpserted,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
    UnhandledEvent,
]
