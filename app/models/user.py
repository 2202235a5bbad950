"""
User Model
==========

SQLAlchemy model for user records.

Profile and usage columns belong to the user-management side of the product.
The billing columns (``stripe_customer_id``, ``plan``, ``subscription``,
``invoices``) are written by the Stripe webhook reconciler and by checkout
session creation.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONDocument


class Plan(str, Enum):
    """Coarse entitlement derived from Stripe subscription status."""
    FREE = "free"
    PRO = "pro"


class User(Base):
    """
    User record model.

    No column has ``onupdate``; an UPDATE of the billing columns leaves every
    other column untouched.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )

    # Profile fields (user management)
    uid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=True,
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Usage counters (user management)
    summary_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_summary_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_summary_reset_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Billing fields
    # Not unique at the database level: uniqueness is maintained by
    # lookup-then-create during checkout.
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    plan: Mapped[Plan] = mapped_column(
        SQLEnum(
            Plan,
            name="userplan",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        default=Plan.FREE,
        nullable=False,
    )
    subscription: Mapped[Optional[dict]] = mapped_column(
        JSONDocument,
        nullable=True,
    )
    invoices: Mapped[dict] = mapped_column(
        JSONDocument,
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, plan={self.plan.value if self.plan else None})>"
