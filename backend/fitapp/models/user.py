"""User model — billing projection plus the identity fields billing needs."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from fitapp.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

ACTIVE_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class SubscriptionProjection:
    """Denormalized subscription state embedded on the user for fast access checks."""

    is_active: bool = False
    plan: str | None = "free"
    stripe_price_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    status: str = "free"

    def is_active_at(self, now: datetime) -> bool:
        """The stored flag, unless the paid period has already run out."""
        return self.is_active and (self.current_period_end is None or now < self.current_period_end)


FREE_PROJECTION = SubscriptionProjection()


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Application user. Only the billing-relevant columns live here."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), default="user", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Stripe linkage (NULLs never collide, so the unique index is effectively sparse)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_environment: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Embedded subscription projection
    subscription_is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_plan: Mapped[str | None] = mapped_column(String(50), default="free", nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_status: Mapped[str | None] = mapped_column(
        String(50), default="free", nullable=True, index=True
    )
    subscription_status_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_webhook_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # One-time program purchases
    assigned_programs: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    subscriptions: Mapped[list["Subscription"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Subscription", back_populates="user", lazy="selectin"
    )

    @validates("email")
    def _normalize_email(self, key: str, value: str) -> str:
        return value.strip().lower()

    @property
    def has_complete_profile(self) -> bool:
        return bool(self.first_name and self.last_name and self.email)

    @property
    def projection(self) -> SubscriptionProjection:
        return SubscriptionProjection(
            is_active=self.subscription_is_active,
            plan=self.subscription_plan,
            stripe_price_id=self.stripe_price_id,
            stripe_subscription_id=self.stripe_subscription_id,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            status=self.subscription_status or "free",
        )

    def has_active_subscription(self, now: datetime | None = None) -> bool:
        """status in {active, trialing} and the period has not ended."""
        now = now or utcnow()
        if self.subscription_status not in ACTIVE_STATUSES:
            return False
        return self.current_period_end is None or now < self.current_period_end

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} status={self.subscription_status!r}>"
