"""Subscription store — the only code that writes billing state.

Every public write is an invariant-preserving transition applied inside the
caller's transaction. Writes are guarded by source precedence and event time:
a transition stamped ``event_at`` is applied only when it is not older than the
last webhook already applied to the same row (strictly newer for non-webhook
sources, so a webhook wins ties).
"""

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, fields as dataclass_fields
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.config import settings
from fitapp.database import utcnow
from fitapp.models.subscription import Subscription, SubscriptionInvoice
from fitapp.models.user import SubscriptionProjection, User
from fitapp.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


class Source(IntEnum):
    """Who is asking for a transition; higher wins ties."""

    SWEEP = 1
    COMMAND = 2
    WEBHOOK = 3


@dataclass(frozen=True)
class UpsertResult:
    subscription: Subscription
    created: bool
    applied: bool


# Subscription columns an upsert may touch
_MUTABLE_COLUMNS = frozenset(
    {
        "user_id",
        "stripe_customer_id",
        "stripe_price_id",
        "checkout_session_id",
        "plan",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
        "amount",
        "currency",
        "billing_environment",
    }
)

# SubscriptionProjection field -> User column
_PROJECTION_COLUMNS = {
    "is_active": "subscription_is_active",
    "plan": "subscription_plan",
    "stripe_price_id": "stripe_price_id",
    "stripe_subscription_id": "stripe_subscription_id",
    "current_period_start": "current_period_start",
    "current_period_end": "current_period_end",
    "cancel_at_period_end": "cancel_at_period_end",
    "status": "subscription_status",
}


def may_apply(stored_at: datetime | None, event_at: datetime, source: Source) -> bool:
    """Monotonicity guard with webhook precedence on ties."""
    if stored_at is None:
        return True
    if source is Source.WEBHOOK:
        return event_at >= stored_at
    return event_at > stored_at


# --- Reads ---


async def load_user_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def load_user_by_stripe_customer_id(
    db: AsyncSession, stripe_customer_id: str
) -> User | None:
    """Look up a user by Stripe customer ID (used by webhooks)."""
    result = await db.execute(select(User).where(User.stripe_customer_id == stripe_customer_id))
    return result.scalar_one_or_none()


async def load_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    """Look up a subscription by Stripe subscription ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def get_owned_subscription(
    db: AsyncSession, user_id: uuid.UUID, stripe_subscription_id: str
) -> Subscription | None:
    """Subscription by Stripe ID, only if it belongs to ``user_id``."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id,
            Subscription.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_by_user(db: AsyncSession, user_id: uuid.UUID) -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
    )
    return list(result.scalars().all())


async def _iter_batches(
    db: AsyncSession, model: type, *conditions: Any, batch_size: int
) -> AsyncIterator[list[Any]]:
    """Keyset-paginate rows of ``model`` matching ``conditions`` in id order."""
    last_id: uuid.UUID | None = None
    while True:
        stmt = select(model).where(*conditions).order_by(model.id).limit(batch_size)
        if last_id is not None:
            stmt = stmt.where(model.id > last_id)
        rows = list((await db.execute(stmt)).scalars().all())
        if not rows:
            return
        last_id = rows[-1].id
        yield rows


def find_expired(
    db: AsyncSession, now: datetime, batch_size: int | None = None
) -> AsyncIterator[list[User]]:
    """Batches of users whose active subscription period has ended."""
    return _iter_batches(
        db,
        User,
        User.subscription_status == "active",
        User.current_period_end.is_not(None),
        User.current_period_end < now,
        batch_size=batch_size or settings.maintenance_batch_size,
    )


def find_long_past_due(
    db: AsyncSession, now: datetime, grace_days: int, batch_size: int | None = None
) -> AsyncIterator[list[User]]:
    """Batches of users stuck in past_due for longer than the grace period."""
    cutoff = now - timedelta(days=grace_days)
    return _iter_batches(
        db,
        User,
        User.subscription_status == "past_due",
        func.coalesce(User.subscription_status_changed_at, User.updated_at) < cutoff,
        batch_size=batch_size or settings.maintenance_batch_size,
    )


def find_linked_users(
    db: AsyncSession, batch_size: int | None = None
) -> AsyncIterator[list[User]]:
    """Batches of users whose projection points at a subscription."""
    return _iter_batches(
        db,
        User,
        User.stripe_subscription_id.is_not(None),
        batch_size=batch_size or settings.maintenance_batch_size,
    )


def find_users_missing_status(
    db: AsyncSession, batch_size: int | None = None
) -> AsyncIterator[list[User]]:
    return _iter_batches(
        db,
        User,
        or_(User.subscription_status.is_(None), User.subscription_status == ""),
        batch_size=batch_size or settings.maintenance_batch_size,
    )


def find_subscriptions_with_period(
    db: AsyncSession, plan: str | None = None, batch_size: int | None = None
) -> AsyncIterator[list[Subscription]]:
    """Batches of subscription rows that have a period start, optionally for one plan."""
    conditions = [Subscription.current_period_start.is_not(None)]
    if plan is not None:
        conditions.append(Subscription.plan == plan)
    return _iter_batches(
        db,
        Subscription,
        *conditions,
        batch_size=batch_size or settings.maintenance_batch_size,
    )


# --- Writes ---


async def upsert_subscription(
    db: AsyncSession,
    stripe_subscription_id: str,
    fields: dict[str, Any],
    source: Source = Source.WEBHOOK,
    event_at: datetime | None = None,
) -> UpsertResult:
    """Insert-or-update keyed on the Stripe subscription ID.

    Only columns present in ``fields`` are written. ``billing_environment`` is
    set on insert and never rewritten afterwards.
    """
    unknown = set(fields) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    event_at = event_at or utcnow()

    existing = await get_subscription_by_stripe_id(db, stripe_subscription_id)
    if existing is None:
        subscription = Subscription(
            stripe_subscription_id=stripe_subscription_id,
            invoices=[],
            **{"billing_environment": settings.billing_environment, **fields},
        )
        if source is Source.WEBHOOK:
            subscription.last_webhook_event_at = event_at
        try:
            async with db.begin_nested():
                db.add(subscription)
        except IntegrityError:
            # Lost a race with a concurrent insert of the same subscription
            existing = await get_subscription_by_stripe_id(db, stripe_subscription_id)
            if existing is None:
                raise
        else:
            logger.info(
                "Created subscription %s for user %s: plan=%s, status=%s",
                stripe_subscription_id,
                subscription.user_id,
                subscription.plan,
                subscription.status,
            )
            return UpsertResult(subscription, created=True, applied=True)

    if not may_apply(existing.last_webhook_event_at, event_at, source):
        logger.info(
            "Skipping stale %s update for subscription %s (event %s < stored %s)",
            source.name.lower(),
            stripe_subscription_id,
            event_at,
            existing.last_webhook_event_at,
        )
        return UpsertResult(existing, created=False, applied=False)

    for key, value in fields.items():
        if key == "billing_environment":
            continue
        if getattr(existing, key) != value:
            setattr(existing, key, value)
    if source is Source.WEBHOOK and existing.last_webhook_event_at != event_at:
        existing.last_webhook_event_at = event_at
    await db.flush()
    return UpsertResult(existing, created=False, applied=True)


async def transition_user_projection(
    db: AsyncSession,
    user: User,
    projection: SubscriptionProjection,
    source: Source,
    event_at: datetime | None = None,
) -> bool:
    """Write a new SubscriptionProjection onto the user.

    Returns False (and writes nothing) when the monotonicity guard rejects it.
    """
    event_at = event_at or utcnow()
    if not may_apply(user.last_webhook_event_at, event_at, source):
        logger.info(
            "Skipping stale %s projection for user %s (event %s < stored %s)",
            source.name.lower(),
            user.id,
            event_at,
            user.last_webhook_event_at,
        )
        return False

    previous_status = user.subscription_status
    for f in dataclass_fields(projection):
        column = _PROJECTION_COLUMNS[f.name]
        value = getattr(projection, f.name)
        if getattr(user, column) != value:
            setattr(user, column, value)
    if projection.status != previous_status:
        user.subscription_status_changed_at = utcnow()
        logger.info(
            "User %s subscription %s -> %s (%s)",
            user.id,
            previous_status,
            projection.status,
            source.name.lower(),
        )
    if source is Source.WEBHOOK and user.last_webhook_event_at != event_at:
        user.last_webhook_event_at = event_at
    await db.flush()
    return True


async def link_stripe_customer(
    db: AsyncSession, user: User, stripe_customer_id: str, billing_environment: str
) -> None:
    """Store the user's Stripe customer ID and the environment it lives in."""
    if user.stripe_customer_id != stripe_customer_id:
        user.stripe_customer_id = stripe_customer_id
    if user.billing_environment != billing_environment:
        user.billing_environment = billing_environment
    await db.flush()


async def append_invoice(
    db: AsyncSession, subscription: Subscription, invoice: dict[str, Any]
) -> bool:
    """Append an invoice to the subscription history unless already recorded."""
    result = await db.execute(
        select(SubscriptionInvoice.id).where(
            SubscriptionInvoice.stripe_invoice_id == invoice["stripe_invoice_id"]
        )
    )
    if result.scalar_one_or_none() is not None:
        return False
    db.add(SubscriptionInvoice(subscription_id=subscription.id, **invoice))
    await db.flush()
    await db.refresh(subscription, attribute_names=["invoices"])
    return True


async def count_canceled_before(db: AsyncSession, cutoff: datetime) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.status == "canceled", Subscription.canceled_at < cutoff)
    )
    return result.scalar_one()


async def delete_canceled_before(db: AsyncSession, cutoff: datetime) -> int:
    """Delete canceled subscriptions whose cancellation predates ``cutoff``."""
    doomed = select(Subscription.id).where(
        Subscription.status == "canceled", Subscription.canceled_at < cutoff
    )
    await db.execute(
        delete(SubscriptionInvoice).where(SubscriptionInvoice.subscription_id.in_(doomed))
    )
    result = await db.execute(
        delete(Subscription)
        .where(Subscription.status == "canceled", Subscription.canceled_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def count_webhook_events_before(db: AsyncSession, cutoff: datetime) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(WebhookEvent)
        .where(WebhookEvent.received_at < cutoff, WebhookEvent.status != "failed")
    )
    return result.scalar_one()


async def prune_webhook_events(db: AsyncSession, cutoff: datetime) -> int:
    """Forget processed idempotency keys older than ``cutoff``; failed rows are kept."""
    result = await db.execute(
        delete(WebhookEvent)
        .where(WebhookEvent.received_at < cutoff, WebhookEvent.status != "failed")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
