"""
Webhook Endpoint Tests
======================

End-to-end deliveries through ``POST /webhooks/stripe`` with the in-memory
store wired in.
"""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from app.config import settings
from app.dependencies import get_event_normalizer
from app.main import app
from app.services.user_store import StoreUnavailableError
from factories import (
    FakeUserStore,
    encode,
    invoice_object,
    make_event,
    sign,
    subscription_object,
)

WEBHOOK_URL = "/webhooks/stripe"


async def _deliver(client: AsyncClient, event: dict, signature: str = None):
    payload = encode(event)
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign(payload)
    return await client.post(WEBHOOK_URL, content=payload, headers=headers)


class TestStripeWebhook:

    @pytest.mark.asyncio
    async def test_trialing_subscription_makes_user_pro(self, client: AsyncClient, store: FakeUserStore):
        event = make_event(
            "customer.subscription.created",
            subscription_object(status="trialing", trial_end=1700086400),
            event_id="evt_trial",
        )

        response = await _deliver(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        row = store.users["user_1"]
        assert row["plan"] == "pro"
        assert row["subscription"]["status"] == "trialing"
        assert row["subscription"]["trialEnd"] == 1700086400
        assert row["summary_count"] == 42

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_without_second_write(
        self, client: AsyncClient, store: FakeUserStore
    ):
        event = make_event("customer.subscription.updated", subscription_object())

        first = await _deliver(client, event)
        second = await _deliver(client, event)

        assert first.status_code == 200
        assert second.status_code == 200
        assert len(store.writes) == 1

    @pytest.mark.asyncio
    async def test_invoice_paid_stored(self, client: AsyncClient, store: FakeUserStore):
        response = await _deliver(client, make_event("invoice.paid", invoice_object()))

        assert response.status_code == 200
        assert store.users["user_1"]["invoices"]["in_1"]["amountPaid"] == 999

    @pytest.mark.asyncio
    async def test_unhandled_type_acknowledged(self, client: AsyncClient, store: FakeUserStore):
        event = make_event("charge.refunded", {"id": "ch_1", "object": "charge"})

        response = await _deliver(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert store.lookups == []
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_deleted_for_unknown_customer_acknowledged(
        self, client: AsyncClient, store: FakeUserStore
    ):
        event = make_event(
            "customer.subscription.deleted",
            subscription_object(customer="cus_gone", status="canceled"),
        )

        response = await _deliver(client, event)

        assert response.status_code == 200
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, store: FakeUserStore):
        event = make_event("customer.subscription.updated", subscription_object())

        response = await _deliver(client, event, signature=sign(b"other body"))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "WEBHOOK_SIGNATURE_ERROR"
        assert store.lookups == []
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient, store: FakeUserStore):
        payload = encode(make_event("invoice.paid", invoice_object()))

        response = await client.post(WEBHOOK_URL, content=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_ERROR"
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_malformed_event_rejected(self, client: AsyncClient, store: FakeUserStore):
        event = make_event("customer.subscription.updated", subscription_object(price_id=None))

        response = await _deliver(client, event)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_MALFORMED_EVENT"
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_unknown_customer_on_upsert_is_404(self, client: AsyncClient, store: FakeUserStore):
        event = make_event(
            "customer.subscription.updated",
            subscription_object(customer="cus_unknown"),
        )

        response = await _deliver(client, event)

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "USER_NOT_FOUND"
        assert "cus_unknown" in body["error"]["message"]
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_store_unavailable_is_503(self, client: AsyncClient, store: FakeUserStore):
        store.find_user_id_by_customer_id = AsyncMock(side_effect=StoreUnavailableError("db down"))

        response = await _deliver(client, make_event("invoice.paid", invoice_object()))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_legacy_invoice_does_not_block_subscription_update(
        self, client: AsyncClient, store: FakeUserStore
    ):
        legacy = {"in_legacy": {"status": "paid", "created": None}}
        store.users["user_1"]["invoices"] = dict(legacy)
        event = make_event("customer.subscription.updated", subscription_object())

        response = await _deliver(client, event)

        assert response.status_code == 200
        assert store.users["user_1"]["plan"] == "pro"
        assert store.users["user_1"]["invoices"] == legacy

    @pytest.mark.asyncio
    async def test_unreadable_record_is_503(self, client: AsyncClient, store: FakeUserStore):
        store.read_user = AsyncMock(
            side_effect=StoreUnavailableError("User user_1 has an unreadable billing record")
        )
        event = make_event("customer.subscription.updated", subscription_object())

        response = await _deliver(client, event)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_missing_webhook_secret_is_503(
        self, client: AsyncClient, store: FakeUserStore, monkeypatch
    ):
        app.dependency_overrides.pop(get_event_normalizer)
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

        response = await _deliver(client, make_event("invoice.paid", invoice_object()))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STRIPE_NOT_CONFIGURED"
        assert store.writes == []
