"""
Common Dependencies
===================

Builds the billing services per request from the shared clients, so routes
never reach for globals and tests can swap any piece via
``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import ErrorCodes, ServiceUnavailableError
from app.db.session import get_db
from app.services.reconciler import Reconciler
from app.services.stripe_billing import StripeBillingService
from app.services.stripe_events import StripeEventNormalizer
from app.services.user_lock import NullUserLock, RedisUserLock, UserLock
from app.services.user_store import SqlUserStore

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_user_store(db: DBSession) -> SqlUserStore:
    """Customer index and user record store for this request."""
    return SqlUserStore(db)


def get_user_lock() -> UserLock:
    """Per-user lock; a no-op without Redis."""
    if settings.user_lock_enabled:
        return RedisUserLock()
    return NullUserLock()


def get_event_normalizer() -> StripeEventNormalizer:
    """Webhook verifier; refuses to run without a signing secret."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise ServiceUnavailableError(
            code=ErrorCodes.STRIPE_NOT_CONFIGURED,
            message="Stripe webhook secret is not configured",
        )
    return StripeEventNormalizer(
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )


def get_reconciler(
    store: Annotated[SqlUserStore, Depends(get_user_store)],
    lock: Annotated[UserLock, Depends(get_user_lock)],
) -> Reconciler:
    """Reconciler wired to the request's store and the shared lock."""
    return Reconciler(index=store, store=store, lock=lock)


def get_billing_service(
    store: Annotated[SqlUserStore, Depends(get_user_store)],
) -> StripeBillingService:
    """Checkout / portal sessions; refuses to run without an API key."""
    service = StripeBillingService(store)
    if not service.configured:
        raise ServiceUnavailableError(
            code=ErrorCodes.STRIPE_NOT_CONFIGURED,
            message="Stripe secret key is not configured",
        )
    return service


UserStore = Annotated[SqlUserStore, Depends(get_user_store)]
EventNormalizer = Annotated[StripeEventNormalizer, Depends(get_event_normalizer)]
BillingReconciler = Annotated[Reconciler, Depends(get_reconciler)]
BillingService = Annotated[StripeBillingService, Depends(get_billing_service)]
