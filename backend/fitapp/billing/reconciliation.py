"""Reconciliation core shared by user commands, webhooks, and maintenance sweeps.

Three inputs describe the same subscription: the local ``Subscription`` row, the
projection embedded on ``User``, and Stripe. This module turns a provider
subscription into store transitions and derives the user projection from a
subscription row. Precedence between inputs is enforced by the store guard
(see ``fitapp.services.subscription_store.may_apply``).
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing.plans import FALLBACK_PRICING, UNKNOWN_PLAN, PlanTag, plan_for_price_id
from fitapp.billing.snapshots import ProviderSubscription
from fitapp.config import settings
from fitapp.models.subscription import Subscription
from fitapp.models.user import ACTIVE_STATUSES, SubscriptionProjection, User
from fitapp.services.subscription_store import (
    Source,
    load_user_by_id,
    load_user_by_stripe_customer_id,
    transition_user_projection,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

STATUS_TAGS = frozenset(
    {"active", "inactive", "canceled", "past_due", "unpaid", "trialing", "expired", "free"}
)
TERMINAL_STATUSES = frozenset({"canceled", "expired"})

# Stripe statuses outside our tag set
_PROVIDER_STATUS_MAP = {
    "incomplete": "inactive",
    "incomplete_expired": "canceled",
    "paused": "inactive",
}

CANCELED_PROJECTION = SubscriptionProjection(
    is_active=False,
    plan="free",
    stripe_price_id=None,
    stripe_subscription_id=None,
    current_period_start=None,
    current_period_end=None,
    cancel_at_period_end=False,
    status="canceled",
)


def normalize_status(provider_status: str | None) -> str:
    """Map a Stripe subscription status onto the closed status tag set."""
    if not provider_status:
        return "inactive"
    status = _PROVIDER_STATUS_MAP.get(provider_status, provider_status)
    return status if status in STATUS_TAGS else "inactive"


def subscription_fields(provider_sub: ProviderSubscription, plan: str) -> dict[str, Any]:
    """Columns a provider subscription can speak for.

    Values the provider left out are omitted rather than written as None, so a
    sparse or out-of-order payload never blanks data already stored.
    """
    fields: dict[str, Any] = {
        "plan": plan,
        "status": normalize_status(provider_sub.status),
        "cancel_at_period_end": provider_sub.cancel_at_period_end,
    }
    optional = {
        "stripe_customer_id": provider_sub.customer_id,
        "stripe_price_id": provider_sub.price_id,
        "current_period_start": provider_sub.current_period_start,
        "current_period_end": provider_sub.current_period_end,
        "canceled_at": provider_sub.canceled_at,
        "currency": provider_sub.currency,
    }
    fields.update({key: value for key, value in optional.items() if value is not None})

    amount = provider_sub.amount
    if amount is None and plan in {tag.value for tag in PlanTag}:
        amount = FALLBACK_PRICING[PlanTag(plan)]
    if amount is not None:
        fields["amount"] = amount
    return fields


def projection_for(subscription: Subscription, current: SubscriptionProjection) -> SubscriptionProjection:
    """Derive the user projection that a subscription row implies."""
    status = subscription.status
    if status == "canceled":
        return CANCELED_PROJECTION

    if status in ACTIVE_STATUSES:
        is_active = True
    elif status == "past_due":
        # Access is kept through the grace period; the sweep ends it
        same = current.stripe_subscription_id == subscription.stripe_subscription_id
        is_active = current.is_active if same else True
    else:
        is_active = False

    return SubscriptionProjection(
        is_active=is_active,
        plan=subscription.plan,
        stripe_price_id=subscription.stripe_price_id,
        stripe_subscription_id=subscription.stripe_subscription_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        status=status,
    )


async def apply_subscription_to_user(
    db: AsyncSession,
    user: User,
    subscription: Subscription,
    source: Source,
    event_at: datetime | None = None,
) -> bool:
    """Project a subscription row onto its user.

    A row that is not the user's current subscription only takes over the
    projection when it is active (drift is reconciled toward the live row).
    """
    current = user.projection
    linked = current.stripe_subscription_id
    if linked is not None and linked != subscription.stripe_subscription_id:
        if not subscription.is_active:
            logger.info(
                "Not projecting %s subscription %s onto user %s (current is %s)",
                subscription.status,
                subscription.stripe_subscription_id,
                user.id,
                linked,
            )
            return False
        logger.warning(
            "Projection drift for user %s: %s -> %s",
            user.id,
            linked,
            subscription.stripe_subscription_id,
        )
    return await transition_user_projection(
        db, user, projection_for(subscription, current), source=source, event_at=event_at
    )


async def resolve_user_for(
    db: AsyncSession, provider_sub: ProviderSubscription, fallback_user_id: str | None = None
) -> User | None:
    """Find the local user a provider subscription belongs to."""
    if provider_sub.customer_id:
        user = await load_user_by_stripe_customer_id(db, provider_sub.customer_id)
        if user is not None:
            return user
    for candidate in (provider_sub.metadata.get("user_id"), fallback_user_id):
        if not candidate:
            continue
        try:
            user = await load_user_by_id(db, uuid.UUID(candidate))
        except ValueError:
            logger.warning("Ignoring malformed user id %r in subscription metadata", candidate)
            continue
        if user is not None:
            return user
    return None


async def sync_provider_subscription(
    db: AsyncSession,
    provider_sub: ProviderSubscription,
    source: Source,
    event_at: datetime | None = None,
    user: User | None = None,
    extra_fields: dict[str, Any] | None = None,
    fallback_user_id: str | None = None,
) -> Subscription | None:
    """Upsert the row for a provider subscription and refresh its user's projection.

    Returns None when no local user can be matched; the subscription is then
    left for a later event (or an operator) to attach.
    """
    if user is None:
        user = await resolve_user_for(db, provider_sub, fallback_user_id)
    if user is None:
        logger.warning(
            "No local user for Stripe subscription %s (customer %s)",
            provider_sub.id,
            provider_sub.customer_id,
        )
        return None

    plan = plan_for_price_id(provider_sub.price_id)
    if plan == UNKNOWN_PLAN:
        logger.warning(
            "Unknown price ID %s in subscription %s, storing plan %r",
            provider_sub.price_id,
            provider_sub.id,
            UNKNOWN_PLAN,
        )

    fields = subscription_fields(provider_sub, plan)
    fields["user_id"] = user.id
    fields.setdefault("currency", settings.stripe_currency)
    if extra_fields:
        fields.update(extra_fields)

    result = await upsert_subscription(
        db, provider_sub.id, fields, source=source, event_at=event_at
    )
    if result.applied:
        await apply_subscription_to_user(db, user, result.subscription, source, event_at)
    return result.subscription


async def mark_subscription_canceled(
    db: AsyncSession,
    subscription: Subscription,
    source: Source,
    event_at: datetime,
    canceled_at: datetime | None = None,
    cancel_at_period_end: bool | None = None,
) -> bool:
    """Move a row to the terminal ``canceled`` state and clear its user's projection."""
    fields: dict[str, Any] = {"status": "canceled", "canceled_at": canceled_at or event_at}
    if cancel_at_period_end is not None:
        fields["cancel_at_period_end"] = cancel_at_period_end
    result = await upsert_subscription(
        db, subscription.stripe_subscription_id, fields, source=source, event_at=event_at
    )
    if not result.applied:
        return False
    user = await load_user_by_id(db, subscription.user_id)
    if user is not None:
        await apply_subscription_to_user(db, user, result.subscription, source, event_at)
    return True


def expired_projection(current: SubscriptionProjection) -> SubscriptionProjection:
    """Projection after the period ended without a renewal (identifiers kept)."""
    return replace(current, is_active=False, status="expired")
