"""
Pydantic Schemas
================

Request/response schemas and typed billing events.
"""

from app.schemas.billing import (
    BillingEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceRecord,
    SubscriptionDeleted,
    SubscriptionState,
    SubscriptionUpserted,
    UnhandledEvent,
    UserRecord,
    plan_for_status,
)
from app.schemas.common import ErrorDetail, ErrorResponse

__all__ = [
    "BillingEvent",
    "ErrorDetail",
    "ErrorResponse",
    "InvoicePaid",
    "InvoicePaymentFailed",
    "InvoiceRecord",
    "SubscriptionDeleted",
    "SubscriptionState",
    "SubscriptionUpserted",
    "UnhandledEvent",
    "UserRecord",
    "plan_for_status",
]
