"""
Shared Test Fixtures
====================
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.dependencies import get_event_normalizer, get_user_lock, get_user_store
from app.main import app
from app.services.reconciler import Reconciler
from app.services.stripe_events import StripeEventNormalizer
from app.services.user_lock import NullUserLock
from factories import WEBHOOK_SECRET, FakeUserStore, user_row


@pytest.fixture
def store() -> FakeUserStore:
    """One user linked to Stripe customer ``cus_1``."""
    return FakeUserStore(user_row("user_1", customer_id="cus_1"))


@pytest.fixture
def normalizer() -> StripeEventNormalizer:
    return StripeEventNormalizer(WEBHOOK_SECRET, tolerance=300)


@pytest.fixture
def reconciler(store: FakeUserStore) -> Reconciler:
    return Reconciler(index=store, store=store)


@pytest_asyncio.fixture
async def client(
    store: FakeUserStore,
    normalizer: StripeEventNormalizer,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the fake store wired in."""
    app.dependency_overrides[get_user_store] = lambda: store
    app.dependency_overrides[get_user_lock] = NullUserLock
    app.dependency_overrides[get_event_normalizer] = lambda: normalizer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
