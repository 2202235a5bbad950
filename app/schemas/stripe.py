"""
Stripe Schemas
==============

Pydantic models for the parts of Stripe webhook payloads we read, and the
checkout / portal session endpoints.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ─── Webhook payloads ────────────────────────────────────────────────────────


class _StripeObject(BaseModel):
    """Stripe objects carry many more keys than we read."""

    model_config = ConfigDict(extra="ignore")


class StripeCustomerRef(_StripeObject):
    """An expanded customer object; only the id matters."""

    id: str


CustomerField = Union[str, StripeCustomerRef]


def customer_id_of(customer: Optional[CustomerField]) -> Optional[str]:
    """Customer id from either an id string or an expanded object."""
    if customer is None:
        return None
    if isinstance(customer, StripeCustomerRef):
        return customer.id
    return customer


class StripePrice(_StripeObject):
    id: str


class StripeSubscriptionItem(_StripeObject):
    price: Optional[StripePrice] = None
    # Newer API versions moved the billing period onto items
    current_period_end: Optional[int] = None


class StripeSubscriptionItems(_StripeObject):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(_StripeObject):
    """``data.object`` of ``customer.subscription.*`` events."""

    id: str
    customer: Optional[CustomerField] = None
    status: str
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[int] = None
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)


class StripeInvoice(_StripeObject):
    """``data.object`` of ``invoice.*`` events."""

    id: Optional[str] = None
    customer: Optional[CustomerField] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    amount_paid: int = 0
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    created: Optional[int] = None
    billing_reason: Optional[str] = None


class StripeEventData(_StripeObject):
    object: dict[str, Any]


class StripeEventEnvelope(_StripeObject):
    """Top level of every Stripe webhook body."""

    id: Optional[str] = None
    type: str
    data: StripeEventData


# ─── Session endpoints ───────────────────────────────────────────────────────


class CheckoutSessionRequest(BaseModel):
    """Body of ``POST /api/stripe/create-checkout-session``."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    return_url: str = Field(alias="returnUrl", min_length=1)
    price_id: Optional[str] = Field(default=None, alias="priceId")


class CheckoutSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(serialization_alias="sessionId")
    url: Optional[str] = None


class PortalSessionRequest(BaseModel):
    """Body of ``POST /api/stripe/create-portal-session``."""

    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(alias="customerId", min_length=1)
    return_url: str = Field(alias="returnUrl", min_length=1)


class PortalSessionResponse(BaseModel):
    url: str


class WebhookAck(BaseModel):
    received: bool = True
