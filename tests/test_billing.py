"""
Billing Endpoint Tests
======================

Checkout and customer-portal sessions, with the Stripe API patched out.
"""

import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from httpx import AsyncClient

from app.config import settings
from app.dependencies import get_billing_service
from app.main import app
from app.services.stripe_billing import StripeBillingService
from app.services.user_store import StoreUnavailableError, UserNotFoundError
from factories import FakeUserStore, user_row

CHECKOUT_URL = "/api/stripe/create-checkout-session"
PORTAL_URL = "/api/stripe/create-portal-session"


@pytest.fixture
def billing(store: FakeUserStore, client: AsyncClient) -> StripeBillingService:
    """Billing service with a test key, wired into the app."""
    service = StripeBillingService(store, api_key="sk_test_123")
    app.dependency_overrides[get_billing_service] = lambda: service
    return service


@pytest.fixture
def stripe_api():
    with patch("app.services.stripe_billing.stripe.Customer.create") as customer_create, \
            patch("app.services.stripe_billing.stripe.checkout.Session.create") as checkout_create, \
            patch("app.services.stripe_billing.stripe.billing_portal.Session.create") as portal_create:
        customer_create.return_value = SimpleNamespace(id="cus_new")
        checkout_create.return_value = SimpleNamespace(
            id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1"
        )
        portal_create.return_value = SimpleNamespace(
            url="https://billing.stripe.com/p/session/test_1"
        )
        yield SimpleNamespace(
            customer_create=customer_create,
            checkout_create=checkout_create,
            portal_create=portal_create,
        )


class TestEnsureCustomer:

    @pytest.mark.asyncio
    async def test_existing_customer_reused(self, store: FakeUserStore, stripe_api):
        service = StripeBillingService(store, api_key="sk_test_123")

        assert await service.ensure_customer("user_1") == "cus_1"

        stripe_api.customer_create.assert_not_called()
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_creates_and_links_customer(self, stripe_api):
        store = FakeUserStore(user_row("user_2", customer_id=None))
        service = StripeBillingService(store, api_key="sk_test_123")

        customer_id = await service.ensure_customer("user_2")

        assert customer_id == "cus_new"
        assert store.users["user_2"]["customer_id"] == "cus_new"
        assert store.writes == [("user_2", {"customer_id": "cus_new"})]
        kwargs = stripe_api.customer_create.call_args.kwargs
        assert kwargs["email"] == "user_2@example.com"
        assert kwargs["metadata"] == {"userId": "user_2"}

    @pytest.mark.asyncio
    async def test_unknown_user(self, store: FakeUserStore, stripe_api):
        service = StripeBillingService(store, api_key="sk_test_123")

        with pytest.raises(UserNotFoundError):
            await service.ensure_customer("user_nobody")

        stripe_api.customer_create.assert_not_called()


class TestCheckoutSession:

    @pytest.mark.asyncio
    async def test_creates_session(self, client: AsyncClient, billing, stripe_api, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_PRO_PLAN_PRICE_ID", "price_pro")
        monkeypatch.setattr(settings, "CHECKOUT_SUCCESS_URL", None)

        response = await client.post(
            CHECKOUT_URL,
            json={"userId": "user_1", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "sessionId": "cs_test_1",
            "url": "https://checkout.stripe.com/c/pay/cs_test_1",
        }
        kwargs = stripe_api.checkout_create.call_args.kwargs
        assert kwargs["customer"] == "cus_1"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert kwargs["subscription_data"] == {
            "trial_period_days": settings.STRIPE_TRIAL_PERIOD_DAYS,
        }
        assert kwargs["success_url"] == "https://app.example.com/billing"
        assert kwargs["cancel_url"] == "https://app.example.com/billing?canceled=true"

    @pytest.mark.asyncio
    async def test_explicit_price(self, client: AsyncClient, billing, stripe_api):
        response = await client.post(
            CHECKOUT_URL,
            json={
                "userId": "user_1",
                "returnUrl": "https://app.example.com/billing",
                "priceId": "price_annual",
            },
        )

        assert response.status_code == 200
        kwargs = stripe_api.checkout_create.call_args.kwargs
        assert kwargs["line_items"] == [{"price": "price_annual", "quantity": 1}]

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, client: AsyncClient, billing, stripe_api):
        response = await client.post(
            CHECKOUT_URL,
            json={"userId": "user_nobody", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"
        stripe_api.checkout_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_stripe_failure_is_502(self, client: AsyncClient, billing, stripe_api):
        stripe_api.checkout_create.side_effect = stripe.StripeError("card network down")

        response = await client.post(
            CHECKOUT_URL,
            json={"userId": "user_1", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "STRIPE_ERROR"

    @pytest.mark.asyncio
    async def test_store_failure_after_customer_created_is_503(
        self, client: AsyncClient, store: FakeUserStore, billing, stripe_api, caplog
    ):
        store.users["user_1"]["customer_id"] = None
        store.update_user_fields = AsyncMock(side_effect=StoreUnavailableError("db down"))

        with caplog.at_level(logging.ERROR, logger="app.services.stripe_billing"):
            response = await client.post(
                CHECKOUT_URL,
                json={"userId": "user_1", "returnUrl": "https://app.example.com/billing"},
            )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"
        stripe_api.checkout_create.assert_not_called()
        assert "cus_new" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_fields_is_422(self, client: AsyncClient, billing):
        response = await client.post(CHECKOUT_URL, json={"userId": "user_1"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_not_configured_is_503(self, client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")

        response = await client.post(
            CHECKOUT_URL,
            json={"userId": "user_1", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STRIPE_NOT_CONFIGURED"


class TestPortalSession:

    @pytest.mark.asyncio
    async def test_creates_session(self, client: AsyncClient, billing, stripe_api):
        response = await client.post(
            PORTAL_URL,
            json={"customerId": "cus_1", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/p/session/test_1"}
        stripe_api.portal_create.assert_called_once_with(
            api_key="sk_test_123",
            customer="cus_1",
            return_url="https://app.example.com/billing",
        )

    @pytest.mark.asyncio
    async def test_stripe_failure_is_502(self, client: AsyncClient, billing, stripe_api):
        stripe_api.portal_create.side_effect = stripe.StripeError("No such customer")

        response = await client.post(
            PORTAL_URL,
            json={"customerId": "cus_bad", "returnUrl": "https://app.example.com/billing"},
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "STRIPE_ERROR"
