"""
Webhooks API Endpoints
======================

Handles webhooks from Stripe.

Authentication:
    Stripe signs every delivery with the endpoint's signing secret in the
    ``Stripe-Signature`` header. The signature covers the exact request
    bytes, so the body is read raw and verified before it is parsed.

Acknowledgement:
    Any verified event is acknowledged with 2xx once applied, including event
    types we ignore; Stripe treats anything else as a failed delivery and
    retries. Unverifiable or malformed deliveries get a 400 with an error
    code. Storage trouble returns 503 so Stripe's redelivery retries it.
"""

import logging
from typing import Optional

import newrelic.agent
from fastapi import APIRouter, Header, Request

from app.core.errors import (
    BadRequestError,
    ErrorCodes,
    NotFoundError,
    ServiceUnavailableError,
)
from app.dependencies import BillingReconciler, EventNormalizer
from app.schemas.common import ErrorResponse
from app.schemas.stripe import WebhookAck
from app.services.stripe_events import MalformedEventError, SignatureInvalidError
from app.services.user_store import StoreUnavailableError, UserNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/stripe",
    response_model=WebhookAck,
    responses={
        400: {"model": ErrorResponse, "description": "Signature invalid or malformed event"},
        404: {"model": ErrorResponse, "description": "No user for the subscription's customer"},
        503: {"model": ErrorResponse, "description": "Store unavailable, retry later"},
    },
)
async def stripe_webhook(
    request: Request,
    normalizer: EventNormalizer,
    reconciler: BillingReconciler,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAck:
    """
    Handle Stripe webhook events.

    Events handled:
    - customer.subscription.created / customer.subscription.updated
    - customer.subscription.deleted
    - invoice.paid
    - invoice.payment_failed (trial conversion failures only)

    Everything else is acknowledged without changes.
    """
    payload = await request.body()

    # ── Verify and normalize ──────────────────────────────────────────────
    try:
        event = normalizer.normalize(payload, stripe_signature)
    except SignatureInvalidError as e:
        raise BadRequestError(
            code=ErrorCodes.WEBHOOK_SIGNATURE_ERROR,
            message=e.message,
        )
    except MalformedEventError as e:
        logger.error("Malformed Stripe event: %s", e.message)
        raise BadRequestError(
            code=ErrorCodes.WEBHOOK_MALFORMED_EVENT,
            message=e.message,
        )

    newrelic.agent.add_custom_attributes([
        ("stripe.event_id", event.event_id or ""),
        ("stripe.event_kind", event.kind),
    ])
    logger.info("Webhook received: kind=%s event_id=%s", event.kind, event.event_id)

    # ── Reconcile ─────────────────────────────────────────────────────────
    try:
        result = await reconciler.apply(event)
    except UserNotFoundError as e:
        logger.error("Webhook rejected: %s (event_id=%s)", e.message, event.event_id)
        raise NotFoundError(
            code=ErrorCodes.USER_NOT_FOUND,
            message=e.message,
        )
    except StoreUnavailableError as e:
        logger.error("Webhook store failure: %s (event_id=%s)", e.message, event.event_id)
        raise ServiceUnavailableError(
            code=ErrorCodes.STORE_UNAVAILABLE,
            message="User store unavailable, retry later",
        )

    logger.info(
        "Webhook processed: kind=%s event_id=%s user=%s applied=%s",
        result.kind,
        event.event_id,
        result.user_id,
        result.applied,
    )

    return WebhookAck()
