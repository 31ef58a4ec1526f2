"""Stripe webhook event handlers — process subscription lifecycle events.

Handlers take ``(db, event)``, write through the subscription store with the
event's own ``created`` timestamp, and never commit; the intake service owns
the transaction.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing import stripe_client
from fitapp.billing.reconciliation import (
    TERMINAL_STATUSES,
    apply_subscription_to_user,
    mark_subscription_canceled,
    sync_provider_subscription,
)
from fitapp.billing.snapshots import (
    ProviderInvoice,
    ProviderSubscription,
    get_field,
    metadata_dict,
    object_id,
    ts_to_naive,
)
from fitapp.database import utcnow
from fitapp.models.purchase import Purchase
from fitapp.models.subscription import Subscription
from fitapp.services.subscription_store import (
    Source,
    append_invoice,
    get_subscription_by_stripe_id,
    load_user_by_id,
    load_user_by_stripe_customer_id,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, stripe.Event], Awaitable[None]]


def _event_time(event: stripe.Event) -> datetime:
    return ts_to_naive(getattr(event, "created", None)) or utcnow()


async def handle_logged_only(db: AsyncSession, event: stripe.Event) -> None:
    """Events we acknowledge for visibility but do not act on."""
    obj = event.data.object
    logger.info("Stripe %s: %s", event.type, getattr(obj, "id", None))


async def handle_subscription_changed(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.created/updated — sync plan, status, and period."""
    provider_sub = ProviderSubscription.from_stripe(event.data.object)
    subscription = await sync_provider_subscription(
        db, provider_sub, source=Source.WEBHOOK, event_at=_event_time(event)
    )
    if subscription is not None:
        logger.info(
            "Subscription %s: %s → plan=%s, status=%s",
            event.type.rsplit(".", 1)[-1],
            provider_sub.id,
            subscription.plan,
            subscription.status,
        )


async def handle_subscription_deleted(db: AsyncSession, event: stripe.Event) -> None:
    """Handle customer.subscription.deleted — mark canceled and reset the user to free."""
    provider_sub = ProviderSubscription.from_stripe(event.data.object)
    event_at = _event_time(event)

    subscription = await get_subscription_by_stripe_id(db, provider_sub.id)
    if subscription is None:
        # Never saw it created; record it so the history is complete
        subscription = await sync_provider_subscription(
            db, provider_sub, source=Source.WEBHOOK, event_at=event_at
        )
        if subscription is None:
            return

    await mark_subscription_canceled(
        db,
        subscription,
        source=Source.WEBHOOK,
        event_at=event_at,
        canceled_at=provider_sub.canceled_at or utcnow(),
    )
    logger.info("Subscription %s deleted, user %s reset to free", provider_sub.id, subscription.user_id)


async def _subscription_for_invoice(db: AsyncSession, invoice: ProviderInvoice) -> Subscription | None:
    if not invoice.subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return None
    subscription = await get_subscription_by_stripe_id(db, invoice.subscription_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (invoice %s)",
            invoice.subscription_id,
            invoice.id,
        )
    return subscription


async def _set_status_from_invoice(
    db: AsyncSession, event: stripe.Event, invoice: ProviderInvoice, status: str
) -> Subscription | None:
    subscription = await _subscription_for_invoice(db, invoice)
    if subscription is None:
        return None
    if subscription.status in TERMINAL_STATUSES:
        logger.info(
            "Subscription %s is %s, invoice %s does not change its status",
            subscription.stripe_subscription_id,
            subscription.status,
            invoice.id,
        )
        return subscription
    event_at = _event_time(event)
    result = await upsert_subscription(
        db, subscription.stripe_subscription_id, {"status": status}, Source.WEBHOOK, event_at
    )
    if result.applied:
        user = await load_user_by_id(db, subscription.user_id)
        if user is not None:
            await apply_subscription_to_user(db, user, result.subscription, Source.WEBHOOK, event_at)
    return result.subscription


async def handle_invoice_payment_succeeded(db: AsyncSession, event: stripe.Event) -> None:
    """Handle invoice.payment_succeeded — confirm active status and record the invoice."""
    invoice = ProviderInvoice.from_stripe(event.data.object)
    subscription = await _set_status_from_invoice(db, event, invoice, "active")
    if subscription is None:
        return
    if await append_invoice(db, subscription, invoice.as_dict()):
        logger.info(
            "Invoice %s paid for subscription %s (%s %s)",
            invoice.id,
            subscription.stripe_subscription_id,
            invoice.amount_paid,
            invoice.currency,
        )


async def handle_invoice_payment_failed(db: AsyncSession, event: stripe.Event) -> None:
    """Handle invoice.payment_failed — mark past_due; access is kept until the grace sweep."""
    invoice = ProviderInvoice.from_stripe(event.data.object)
    subscription = await _set_status_from_invoice(db, event, invoice, "past_due")
    if subscription is not None:
        logger.warning(
            "Payment failed for subscription %s (invoice %s)",
            subscription.stripe_subscription_id,
            invoice.id,
        )


async def _complete_subscription_checkout(db: AsyncSession, event: stripe.Event, session) -> None:
    subscription_id = object_id(get_field(session, "subscription"))
    if not subscription_id:
        logger.warning("Subscription checkout %s has no subscription, skipping", session.id)
        return

    # Fetch full subscription from Stripe to get price and period info
    stripe_sub = await stripe_client.get_subscription(subscription_id)
    metadata = metadata_dict(session)
    subscription = await sync_provider_subscription(
        db,
        ProviderSubscription.from_stripe(stripe_sub),
        source=Source.WEBHOOK,
        event_at=_event_time(event),
        extra_fields={"checkout_session_id": session.id},
        fallback_user_id=metadata.get("user_id") or get_field(session, "client_reference_id"),
    )
    if subscription is not None:
        logger.info(
            "Checkout completed: subscription %s activated on plan %s",
            subscription_id,
            subscription.plan,
        )


async def _assign_program(db: AsyncSession, session, program_id: str) -> None:
    user = None
    customer_id = get_field(session, "customer")
    if isinstance(customer_id, str):
        user = await load_user_by_stripe_customer_id(db, customer_id)
    if user is None:
        logger.warning("No local user for program purchase %s (customer %s)", session.id, customer_id)
        return
    if program_id in (user.assigned_programs or []):
        return
    # Reassign so the JSON column is flagged dirty
    user.assigned_programs = [*(user.assigned_programs or []), program_id]
    await db.flush()
    logger.info("Assigned program %s to user %s", program_id, user.id)


async def _complete_product_purchase(db: AsyncSession, session) -> None:
    result = await db.execute(
        select(Purchase).where(Purchase.stripe_checkout_session_id == session.id)
    )
    purchase = result.scalar_one_or_none()
    if purchase is None:
        logger.warning("No pending purchase for checkout session %s", session.id)
        return
    if purchase.status == "completed":
        return
    purchase.status = "completed"
    payment_intent = get_field(session, "payment_intent")
    if payment_intent is not None:
        purchase.stripe_payment_intent_id = object_id(payment_intent)
    await db.flush()
    logger.info("Purchase %s completed (checkout %s)", purchase.id, session.id)


async def handle_checkout_session_completed(db: AsyncSession, event: stripe.Event) -> None:
    """Handle checkout.session.completed — subscriptions, program grants, product orders."""
    session = event.data.object
    mode = get_field(session, "mode", "subscription")
    if mode == "subscription":
        await _complete_subscription_checkout(db, event, session)
        return

    metadata = metadata_dict(session)
    if metadata.get("programId"):
        await _assign_program(db, session, metadata["programId"])
    elif metadata.get("type") == "product_purchase":
        await _complete_product_purchase(db, session)
    else:
        logger.info("Checkout session %s (%s) needs no action", session.id, mode)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "customer.created": handle_logged_only,
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.created": handle_logged_only,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "payment_intent.succeeded": handle_logged_only,
    "payment_intent.payment_failed": handle_logged_only,
    "checkout.session.completed": handle_checkout_session_completed,
}
