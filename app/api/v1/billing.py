"""
Billing API Endpoints
=====================

Stripe checkout and customer portal sessions for the web client.
"""

import logging

import stripe
from fastapi import APIRouter

from app.core.errors import (
    ErrorCodes,
    NotFoundError,
    ServiceUnavailableError,
    UpstreamError,
)
from app.dependencies import BillingService
from app.schemas.common import ErrorResponse
from app.schemas.stripe import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PortalSessionRequest,
    PortalSessionResponse,
)
from app.services.user_store import StoreUnavailableError, UserNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/create-checkout-session",
    response_model=CheckoutSessionResponse,
    responses={
        404: {"model": ErrorResponse, "description": "User not found"},
        502: {"model": ErrorResponse, "description": "Stripe request failed"},
        503: {"model": ErrorResponse, "description": "Store unavailable, retry later"},
    },
)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    billing: BillingService,
) -> CheckoutSessionResponse:
    """
    Start a subscription checkout for a user.

    Creates the user's Stripe customer on first use.
    """
    try:
        session = await billing.create_checkout_session(
            body.user_id,
            body.return_url,
            price_id=body.price_id,
        )
    except UserNotFoundError as e:
        raise NotFoundError(code=ErrorCodes.USER_NOT_FOUND, message=e.message)
    except StoreUnavailableError as e:
        logger.error("Store failure during checkout for user %s: %s", body.user_id, e.message)
        raise ServiceUnavailableError(
            code=ErrorCodes.STORE_UNAVAILABLE,
            message="User store unavailable, retry later",
        )
    except stripe.StripeError as e:
        logger.error("Error creating checkout session for user %s: %s", body.user_id, e)
        raise UpstreamError(message="Failed to create checkout session")

    return CheckoutSessionResponse(session_id=session.id, url=session.url)


@router.post(
    "/create-portal-session",
    response_model=PortalSessionResponse,
    responses={
        502: {"model": ErrorResponse, "description": "Stripe request failed"},
    },
)
async def create_portal_session(
    body: PortalSessionRequest,
    billing: BillingService,
) -> PortalSessionResponse:
    """Open the Stripe customer portal for an existing customer."""
    try:
        session = await billing.create_portal_session(body.customer_id, body.return_url)
    except stripe.StripeError as e:
        logger.error("Error creating portal session for customer %s: %s", body.customer_id, e)
        raise UpstreamError(message="Failed to create portal session")

    return PortalSessionResponse(url=session.url)
