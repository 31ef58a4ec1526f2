"""Subscription service — user-initiated billing commands.

Commands talk to Stripe first and then record what Stripe returned. Each one
is stamped with the time it started, so a webhook that lands while the
provider call is in flight wins and the command's write becomes a no-op.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing import stripe_client
from fitapp.billing.errors import (
    InvalidPaymentMethod,
    InvalidPlan,
    ProviderError,
    ProviderNotFound,
)
from fitapp.billing.plans import get_plan, parse_plan, price_id_for_plan
from fitapp.billing.reconciliation import (
    TERMINAL_STATUSES,
    mark_subscription_canceled,
    sync_provider_subscription,
)
from fitapp.billing.snapshots import ProviderInvoice, ProviderSubscription
from fitapp.config import settings
from fitapp.database import utcnow
from fitapp.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from fitapp.models.subscription import Subscription
from fitapp.models.user import SubscriptionProjection, User
from fitapp.services.subscription_store import (
    Source,
    get_owned_subscription,
    link_stripe_customer,
)

logger = logging.getLogger(__name__)


def provider_error_to_app_error(error: ProviderError, operation: str) -> AppError:
    """Translate a classified provider failure into the API error it surfaces as."""
    if isinstance(error, ProviderNotFound):
        return NotFoundError(f"Payment provider could not find the resource ({operation})")
    if isinstance(error, InvalidPaymentMethod):
        return ValidationError(error.message, code="INVALID_PAYMENT_METHOD")
    return ProviderUnavailableError(
        f"Payment provider error during {operation}", details={"kind": error.kind}
    )


def _require_paid_plan(plan: str) -> str:
    try:
        tag = parse_plan(plan)
    except InvalidPlan as e:
        raise ValidationError(str(e), code="INVALID_PLAN") from e
    if not get_plan(tag.value).is_paid:
        raise ValidationError("The free plan cannot be purchased", code="INVALID_PLAN")
    return tag.value


async def _require_price(plan: str) -> str:
    price_id = await price_id_for_plan(plan)
    if not price_id:
        logger.error("No Stripe price configured for plan %s", plan)
        raise ProviderUnavailableError(
            f"Plan {plan} is not available for purchase right now",
            code="PLAN_UNAVAILABLE",
        )
    return price_id


async def _require_owned(db: AsyncSession, user: User, stripe_subscription_id: str) -> Subscription:
    subscription = await get_owned_subscription(db, user.id, stripe_subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


async def ensure_stripe_customer(
    db: AsyncSession, user: User, payment_method_id: str | None = None
) -> str:
    """Ensure the user has a live Stripe customer. Create one if missing.

    A stored customer that Stripe no longer knows (deleted, or created under
    the other billing environment) is replaced.
    """
    if user.stripe_customer_id and user.billing_environment in (None, settings.billing_environment):
        try:
            customer = await stripe_client.retrieve_customer(user.stripe_customer_id)
        except ProviderNotFound:
            customer = None
        if customer is not None and not getattr(customer, "deleted", False):
            if payment_method_id:
                await stripe_client.attach_payment_method(customer.id, payment_method_id)
            return customer.id
        logger.warning(
            "Stripe customer %s for user %s is gone, creating a new one",
            user.stripe_customer_id,
            user.id,
        )
    elif user.stripe_customer_id:
        logger.info(
            "User %s has a %s customer, switching to %s",
            user.id,
            user.billing_environment,
            settings.billing_environment,
        )

    customer = await stripe_client.find_or_create_customer(
        email=user.email,
        metadata={"user_id": str(user.id)},
        payment_method_id=payment_method_id,
    )
    await link_stripe_customer(db, user, customer.id, settings.billing_environment)
    logger.info("Linked Stripe customer %s to user %s", customer.id, user.id)
    return customer.id


async def start_checkout(
    db: AsyncSession, user: User, plan: str, success_url: str, cancel_url: str
) -> dict[str, str]:
    """Open a hosted Checkout Session for a paid plan.

    The subscription itself is created by the ``checkout.session.completed``
    webhook, not here.
    """
    plan = _require_paid_plan(plan)
    if not user.has_complete_profile:
        raise ValidationError(
            "First name, last name and email are required before subscribing",
            code="INCOMPLETE_PROFILE",
        )
    if user.has_active_subscription():
        raise ConflictError(
            "User already has an active subscription", code="ACTIVE_SUBSCRIPTION_EXISTS"
        )
    price_id = await _require_price(plan)

    try:
        customer_id = await ensure_stripe_customer(db, user)
        session = await stripe_client.create_checkout_session(
            customer_id=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": str(user.id), "plan": plan},
        )
    except ProviderError as e:
        raise provider_error_to_app_error(e, "checkout") from e

    user.stripe_checkout_session_id = session.id
    await db.flush()
    logger.info("Checkout session %s opened for user %s (%s)", session.id, user.id, plan)
    return {"session_id": session.id, "url": session.url}


async def create_direct_subscription(
    db: AsyncSession, user: User, email: str, payment_method_id: str, plan: str
) -> Subscription:
    """Create a subscription server-side with a payment method collected client-side."""
    plan = _require_paid_plan(plan)
    if email.strip().lower() != user.email:
        raise ValidationError("Email does not match the signed-in user")
    if not user.has_complete_profile:
        raise ValidationError(
            "First name, last name and email are required before subscribing",
            code="INCOMPLETE_PROFILE",
        )
    if not payment_method_id:
        raise ValidationError("paymentMethodId is required")
    if user.has_active_subscription():
        raise ConflictError(
            "User already has an active subscription", code="ACTIVE_SUBSCRIPTION_EXISTS"
        )
    price_id = await _require_price(plan)
    started_at = utcnow()

    try:
        customer_id = await ensure_stripe_customer(db, user, payment_method_id=payment_method_id)
        stripe_sub = await stripe_client.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            payment_method_id=payment_method_id,
            metadata={"user_id": str(user.id), "plan": plan},
        )
    except ProviderError as e:
        raise provider_error_to_app_error(e, "subscription create") from e

    subscription = await sync_provider_subscription(
        db,
        ProviderSubscription.from_stripe(stripe_sub),
        source=Source.COMMAND,
        event_at=started_at,
        user=user,
    )
    logger.info("Created subscription %s for user %s", stripe_sub.id, user.id)
    return subscription


async def cancel_subscription(
    db: AsyncSession, user: User, stripe_subscription_id: str, at_period_end: bool = True
) -> SubscriptionProjection:
    """Cancel now or at period end; returns the user's updated projection.

    If Stripe cannot be reached the local record is still moved to canceled so
    the user sees the cancellation take effect; the next webhook or sweep
    reconciles with whatever Stripe ends up holding.
    """
    subscription = await _require_owned(db, user, stripe_subscription_id)
    if subscription.status == "canceled":
        raise ConflictError("Subscription is already canceled", code="ALREADY_CANCELED")
    started_at = utcnow()

    try:
        stripe_sub = await stripe_client.cancel_subscription(
            stripe_subscription_id, at_period_end=at_period_end
        )
    except ProviderError as e:
        logger.error(
            "Stripe cancel failed for %s (%s), canceling locally: %s",
            stripe_subscription_id,
            e.kind,
            e.message,
        )
        await mark_subscription_canceled(
            db,
            subscription,
            source=Source.COMMAND,
            event_at=started_at,
            cancel_at_period_end=at_period_end,
        )
        return user.projection

    await sync_provider_subscription(
        db,
        ProviderSubscription.from_stripe(stripe_sub),
        source=Source.COMMAND,
        event_at=started_at,
        user=user,
    )
    logger.info(
        "Subscription %s canceled by user %s (at_period_end=%s)",
        stripe_subscription_id,
        user.id,
        at_period_end,
    )
    return user.projection


async def resume_subscription(
    db: AsyncSession, user: User, stripe_subscription_id: str
) -> SubscriptionProjection:
    """Undo a pending cancel-at-period-end."""
    subscription = await _require_owned(db, user, stripe_subscription_id)
    if subscription.status in TERMINAL_STATUSES:
        raise ConflictError(
            f"Subscription is {subscription.status} and cannot be resumed",
            code="SUBSCRIPTION_ENDED",
        )
    if not subscription.cancel_at_period_end:
        raise ValidationError(
            "Subscription is not scheduled for cancellation", code="NOT_SCHEDULED_FOR_CANCELLATION"
        )
    started_at = utcnow()

    try:
        stripe_sub = await stripe_client.update_subscription(
            stripe_subscription_id, cancel_at_period_end=False
        )
    except ProviderError as e:
        raise provider_error_to_app_error(e, "subscription resume") from e

    provider_sub = ProviderSubscription.from_stripe(stripe_sub)
    # Stripe clears canceled_at on resume; write the None through
    await sync_provider_subscription(
        db,
        provider_sub,
        source=Source.COMMAND,
        event_at=started_at,
        user=user,
        extra_fields={"canceled_at": provider_sub.canceled_at},
    )
    logger.info("Subscription %s resumed by user %s", stripe_subscription_id, user.id)
    return user.projection


async def change_plan(
    db: AsyncSession, user: User, stripe_subscription_id: str, plan: str
) -> Subscription:
    """Move a live subscription to another paid plan with proration."""
    subscription = await _require_owned(db, user, stripe_subscription_id)
    if subscription.status in TERMINAL_STATUSES:
        raise ConflictError(
            f"Subscription is {subscription.status} and cannot change plan",
            code="SUBSCRIPTION_ENDED",
        )
    plan = _require_paid_plan(plan)
    if plan == subscription.plan:
        raise ValidationError(f"Subscription is already on plan {plan}", code="SAME_PLAN")
    price_id = await _require_price(plan)
    started_at = utcnow()

    try:
        stripe_sub = await stripe_client.update_subscription(
            stripe_subscription_id,
            price_id=price_id,
            metadata={"user_id": str(user.id), "plan": plan},
        )
    except ProviderError as e:
        raise provider_error_to_app_error(e, "plan change") from e

    synced = await sync_provider_subscription(
        db,
        ProviderSubscription.from_stripe(stripe_sub),
        source=Source.COMMAND,
        event_at=started_at,
        user=user,
    )
    logger.info(
        "Subscription %s moved from %s to %s", stripe_subscription_id, subscription.plan, plan
    )
    return synced or subscription


async def list_invoices(
    db: AsyncSession, user: User, stripe_subscription_id: str
) -> list[dict[str, Any]]:
    """Invoices for an owned subscription, from Stripe or the local history."""
    subscription = await _require_owned(db, user, stripe_subscription_id)
    try:
        invoices = await stripe_client.list_invoices(stripe_subscription_id)
    except ProviderError as e:
        logger.warning(
            "Listing invoices for %s from local history (%s)", stripe_subscription_id, e.kind
        )
        return [
            {
                "stripe_invoice_id": invoice.stripe_invoice_id,
                "amount": invoice.amount,
                "currency": invoice.currency,
                "status": invoice.status,
                "paid_at": invoice.paid_at,
                "due_at": invoice.due_at,
                "url": invoice.url,
            }
            for invoice in subscription.invoices
        ]
    return [ProviderInvoice.from_stripe(invoice).as_dict() for invoice in invoices]
