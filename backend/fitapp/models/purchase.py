"""Purchase model — one-time product purchases paid through Stripe Checkout."""

import uuid

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fitapp.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Purchase(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A product order; the checkout webhook flips it from pending to completed."""

    __tablename__ = "purchases"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, status={self.status})>"
