"""Webhook event ledger — idempotency keys and dead-letter entries."""

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fitapp.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class WebhookEvent(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A Stripe event that passed signature verification.

    ``status`` is ``processed``, ``ignored`` (unknown type) or ``failed``. Failed
    rows are the dead-letter log: the event was acknowledged to Stripe but its
    handler raised, so it needs offline inspection.
    """

    __tablename__ = "webhook_events"

    stripe_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    event_created_at: Mapped[datetime | None] = mapped_column(nullable=True)
    received_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent({self.stripe_event_id} {self.event_type} status={self.status})>"
