"""
Stripe Billing Service
======================

Checkout and customer-portal sessions.

Checkout is also where a user first gets a Stripe customer: if the user has
no ``customer_id`` yet, one is created and stored before the session is
opened. That is the only place a new ``customer_id`` is written.
"""

import logging
from typing import Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from app.config import settings
from app.services.user_store import (
    StoreUnavailableError,
    UserNotFoundError,
    UserRecordStore,
)

logger = logging.getLogger(__name__)


class StripeBillingService:
    """Session creation against the Stripe API."""

    def __init__(self, store: UserRecordStore, api_key: Optional[str] = None):
        self.store = store
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def ensure_customer(self, user_id: str) -> str:
        """
        Return the user's Stripe customer id, creating the customer if needed.

        Raises:
            UserNotFoundError: No such user.
            StoreUnavailableError: The store failed; a customer created in
                this call is left unlinked (logged).
        """
        record = await self.store.read_user(user_id)
        if record is None:
            raise UserNotFoundError(f"User {user_id} not found")

        if record.customer_id:
            return record.customer_id

        customer = await run_in_threadpool(
            stripe.Customer.create,
            api_key=self.api_key,
            email=record.email,
            name=record.display_name,
            metadata={"userId": user_id},
        )
        try:
            await self.store.update_user_fields(user_id, {"customer_id": customer.id})
        except StoreUnavailableError:
            logger.error(
                "Stripe customer %s created for user %s but not linked; it is orphaned",
                customer.id,
                user_id,
            )
            raise

        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    async def create_checkout_session(
        self,
        user_id: str,
        return_url: str,
        price_id: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """
        Open a subscription checkout session for ``user_id``.

        Args:
            user_id: User starting checkout.
            return_url: Where the cancel link returns to.
            price_id: Price to subscribe to; defaults to the pro plan price.
        """
        customer_id = await self.ensure_customer(user_id)

        session = await run_in_threadpool(
            stripe.checkout.Session.create,
            api_key=self.api_key,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[
                {
                    "price": price_id or settings.STRIPE_PRO_PLAN_PRICE_ID,
                    "quantity": 1,
                }
            ],
            mode="subscription",
            subscription_data={
                "trial_period_days": settings.STRIPE_TRIAL_PERIOD_DAYS,
            },
            success_url=settings.CHECKOUT_SUCCESS_URL or return_url,
            cancel_url=f"{return_url}?canceled=true",
        )

        logger.info("Created checkout session %s for user %s", session.id, user_id)
        return session

    async def create_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> stripe.billing_portal.Session:
        """Open a billing portal session for an existing customer."""
        session = await run_in_threadpool(
            stripe.billing_portal.Session.create,
            api_key=self.api_key,
            customer=customer_id,
            return_url=return_url,
        )

        logger.info("Created portal session for customer %s", customer_id)
        return session
