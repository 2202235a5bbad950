"""
Billing Reconciler
==================

Applies one normalized Stripe event to the user record it belongs to.

Transitions:
- SubscriptionUpserted: replace ``subscription``; ``plan`` is ``pro`` iff the
  status is active or trialing. A missing user is an error.
- SubscriptionDeleted: clear ``subscription``; ``plan`` becomes ``free``.
- InvoicePaid: upsert ``invoices[invoice_id]``; ``plan`` untouched.
- InvoicePaymentFailed: only for ``billing_reason == subscription_create``
  (a failed trial conversion); clear ``subscription`` and drop to ``free``.
- UnhandledEvent: nothing.

For every kind except SubscriptionUpserted a missing user is logged and
skipped: late or duplicate events for a customer we no longer know are
normal.

Every transition is idempotent and derives ``plan`` only from the incoming
event. Each write is read-modify-write under the per-user lock and names only
the fields the transition owns. Ordering between events is last-write-wins:
a redelivered older ``customer.subscription.updated`` can overwrite a newer
deletion.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.models.user import Plan
from app.schemas.billing import (
    TRIAL_FAILURE_BILLING_REASON,
    BillingEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpserted,
    UnhandledEvent,
    UserRecord,
    plan_for_status,
)
from app.services.user_lock import NullUserLock, UserLock
from app.services.user_store import CustomerIndex, UserNotFoundError, UserRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """What happened to an event."""

    kind: str
    user_id: Optional[str] = None
    applied: bool = False


class Reconciler:
    """Event-to-user-record state transitions."""

    def __init__(
        self,
        index: CustomerIndex,
        store: UserRecordStore,
        lock: Optional[UserLock] = None,
    ):
        self.index = index
        self.store = store
        self.lock = lock or NullUserLock()

    async def apply(self, event: BillingEvent) -> ReconcileResult:
        """
        Apply ``event`` to its user record.

        Raises:
            UserNotFoundError: SubscriptionUpserted for an unknown customer.
            StoreUnavailableError: Storage or lock failure; retry later.
        """
        if isinstance(event, SubscriptionUpserted):
            return await self._apply_subscription_upserted(event)
        if isinstance(event, SubscriptionDeleted):
            return await self._clear_subscription(event.kind, event.customer_id, event.event_id)
        if isinstance(event, InvoicePaid):
            return await self._apply_invoice_paid(event)
        if isinstance(event, InvoicePaymentFailed):
            return await self._apply_invoice_payment_failed(event)
        if isinstance(event, UnhandledEvent):
            logger.info("Unhandled Stripe event %s (%s), acknowledging", event.raw_type, event.event_id)
            return ReconcileResult(kind=event.kind)

        raise TypeError(f"Unsupported billing event: {type(event).__name__}")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _apply_subscription_upserted(self, event: SubscriptionUpserted) -> ReconcileResult:
        plan = plan_for_status(event.status)
        subscription = event.to_state().to_document()

        def changes(record: UserRecord) -> dict[str, Any]:
            if record.plan == plan and record.subscription == subscription:
                return {}
            return {"plan": plan.value, "subscription": subscription}

        result = await self._mutate(event.kind, event.customer_id, changes, required=True)
        logger.info(
            "Subscription %s for customer %s is %s; user=%s plan=%s applied=%s",
            event.subscription_id,
            event.customer_id,
            event.status,
            result.user_id,
            plan.value,
            result.applied,
        )
        return result

    async def _clear_subscription(
        self,
        kind: str,
        customer_id: str,
        event_id: Optional[str],
    ) -> ReconcileResult:
        def changes(record: UserRecord) -> dict[str, Any]:
            if record.plan == Plan.FREE and record.subscription is None:
                return {}
            return {"plan": Plan.FREE.value, "subscription": None}

        result = await self._mutate(kind, customer_id, changes)
        if result.user_id is not None:
            logger.info(
                "Removed subscription for user=%s customer=%s (%s, event %s) applied=%s",
                result.user_id,
                customer_id,
                kind,
                event_id,
                result.applied,
            )
        return result

    async def _apply_invoice_paid(self, event: InvoicePaid) -> ReconcileResult:
        invoice = event.to_record().to_document()

        def changes(record: UserRecord) -> dict[str, Any]:
            if record.invoices.get(event.invoice_id) == invoice:
                return {}
            # Other entries are carried over exactly as stored
            invoices = dict(record.invoices)
            invoices[event.invoice_id] = invoice
            return {"invoices": invoices}

        result = await self._mutate(event.kind, event.customer_id, changes)
        if result.user_id is not None:
            logger.info(
                "Stored invoice %s under user=%s applied=%s",
                event.invoice_id,
                result.user_id,
                result.applied,
            )
        return result

    async def _apply_invoice_payment_failed(self, event: InvoicePaymentFailed) -> ReconcileResult:
        if event.billing_reason != TRIAL_FAILURE_BILLING_REASON:
            logger.info(
                "Payment failed for customer %s (billing_reason=%s), no plan change",
                event.customer_id,
                event.billing_reason,
            )
            return ReconcileResult(kind=event.kind)

        result = await self._clear_subscription(event.kind, event.customer_id, event.event_id)
        if result.user_id is not None:
            logger.warning("Trial payment failed. Downgraded user %s to free plan.", result.user_id)
        return result

    # -------------------------------------------------------------------------
    # Read-modify-write
    # -------------------------------------------------------------------------

    async def _mutate(
        self,
        kind: str,
        customer_id: str,
        compute_changes,
        required: bool = False,
    ) -> ReconcileResult:
        """
        Find the user for ``customer_id`` and write ``compute_changes(record)``.

        ``compute_changes`` sees the freshly read record and returns only the
        fields to overwrite (empty when the record is already in that state).
        """
        user_id = await self.index.find_user_id_by_customer_id(customer_id)
        if user_id is None:
            return self._missing_user(kind, customer_id, required)

        async with self.lock.hold(user_id):
            record = await self.store.read_user(user_id)
            if record is None:
                return self._missing_user(kind, customer_id, required)

            fields = compute_changes(record)
            if not fields:
                logger.info("User %s already reflects %s, no write needed", user_id, kind)
                return ReconcileResult(kind=kind, user_id=user_id, applied=False)

            updated = await self.store.update_user_fields(user_id, fields)
            if not updated:
                return self._missing_user(kind, customer_id, required)

        return ReconcileResult(kind=kind, user_id=user_id, applied=True)

    @staticmethod
    def _missing_user(kind: str, customer_id: str, required: bool) -> ReconcileResult:
        if required:
            raise UserNotFoundError(
                f"No user found for Stripe customer {customer_id}",
                customer_id=customer_id,
            )
        logger.warning("No user found for Stripe customer %s (%s), skipping", customer_id, kind)
        return ReconcileResult(kind=kind)
