"""
User Record Store
=================

The two storage capabilities the billing core depends on:

- ``CustomerIndex``: exact-match lookup of a user by Stripe customer id.
- ``UserRecordStore``: point reads and partial-field updates of a user.

``SqlUserStore`` implements both on the ``users`` table. Updates only ever
name the billing columns, so profile and usage columns owned by user
management are never rewritten.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

import newrelic.agent
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import Plan, User
from app.schemas.billing import UserRecord

logger = logging.getLogger(__name__)

# Record field -> users column
WRITABLE_FIELDS = {
    "customer_id": "stripe_customer_id",
    "plan": "plan",
    "subscription": "subscription",
    "invoices": "invoices",
}

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, OSError, asyncio.TimeoutError)


class CustomerIndex(Protocol):
    async def find_user_id_by_customer_id(self, customer_id: str) -> Optional[str]:
        ...


class UserRecordStore(Protocol):
    async def read_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    async def update_user_fields(self, user_id: str, fields: dict[str, Any]) -> bool:
        ...


class SqlUserStore:
    """``CustomerIndex`` and ``UserRecordStore`` over SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_user_id_by_customer_id(self, customer_id: str) -> Optional[str]:
        """
        Find the user linked to a Stripe customer.

        Returns the first match ordered by ``user_id``. More than one match
        breaks the one-user-per-customer invariant; it is logged and reported
        to New Relic instead of failing the event.
        """
        stmt = (
            select(User.user_id)
            .where(User.stripe_customer_id == customer_id)
            .order_by(User.user_id)
            .limit(2)
        )
        try:
            result = await self.db.execute(stmt)
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Customer lookup failed: {exc}") from exc

        user_ids = list(result.scalars())
        if not user_ids:
            return None

        if len(user_ids) > 1:
            logger.error(
                "Stripe customer %s is linked to more than one user (%s); using %s",
                customer_id,
                ", ".join(user_ids),
                user_ids[0],
            )
            newrelic.agent.record_custom_event(
                "DuplicateBillingCustomer",
                {"customer_id": customer_id, "user_id": user_ids[0]},
            )

        return user_ids[0]

    async def read_user(self, user_id: str) -> Optional[UserRecord]:
        """Read the billing view of a user, or None if there is no such row."""
        try:
            user = await self.db.get(User, user_id, populate_existing=True)
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(f"Reading user {user_id} failed: {exc}") from exc

        if user is None:
            return None

        try:
            return UserRecord(
                user_id=user.user_id,
                customer_id=user.stripe_customer_id,
                email=user.email,
                display_name=user.display_name,
                plan=user.plan,
                subscription=user.subscription,
                invoices=user.invoices or {},
            )
        except ValidationError as exc:
            # Stored state the billing view cannot hold; needs fixing in the store
            logger.error("User %s has an unreadable billing record: %s", user_id, exc)
            raise StoreUnavailableError(
                f"User {user_id} has an unreadable billing record"
            ) from exc

    async def update_user_fields(self, user_id: str, fields: dict[str, Any]) -> bool:
        """
        Write only the named billing fields and commit.

        Args:
            user_id: Row to update.
            fields: Record field names (see ``WRITABLE_FIELDS``) to new values.
                Embedded documents must already be plain JSON-ready dicts.

        Returns:
            True if a row was updated, False if the user does not exist.
        """
        unknown = set(fields) - set(WRITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Not a writable user field: {', '.join(sorted(unknown))}")
        if not fields:
            return True

        values = {WRITABLE_FIELDS[name]: value for name, value in fields.items()}
        if "plan" in values:
            values["plan"] = Plan(values["plan"])

        stmt = (
            update(User)
            .where(User.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except _UNAVAILABLE_ERRORS as exc:
            await self.db.rollback()
            raise StoreUnavailableError(f"Updating user {user_id} failed: {exc}") from exc

        return result.rowcount > 0


# =============================================================================
# Custom Exceptions
# =============================================================================

class UserNotFoundError(Exception):
    """Raised when no user record exists for a user or customer id."""

    def __init__(self, message: str, customer_id: Optional[str] = None):
        self.message = message
        self.customer_id = customer_id
        super().__init__(message)


class StoreUnavailableError(Exception):
    """Raised on transient storage failures; the caller should retry later."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
