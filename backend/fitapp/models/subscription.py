"""Subscription models — normalized Stripe subscription history and its invoices."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fitapp.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per Stripe subscription a user has ever held."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "ix_subscriptions_user_status_period_end",
            "user_id",
            "status",
            "current_period_end",
            postgresql_ops={"current_period_end": "DESC"},
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan & status
    plan: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Pricing
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    # Fixed at creation, never rewritten
    billing_environment: Mapped[str] = mapped_column(String(20), nullable=False)

    last_webhook_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    invoices: Mapped[list["SubscriptionInvoice"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SubscriptionInvoice.created_at",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ("active", "trialing")

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, stripe_subscription_id={self.stripe_subscription_id}, "
            f"plan={self.plan}, status={self.status})>"
        )


class SubscriptionInvoice(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A paid invoice appended to a subscription's history."""

    __tablename__ = "subscription_invoices"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stripe_invoice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    subscription: Mapped["Subscription"] = relationship(back_populates="invoices")

    def __repr__(self) -> str:
        return f"<SubscriptionInvoice(stripe_invoice_id={self.stripe_invoice_id}, amount={self.amount})>"
