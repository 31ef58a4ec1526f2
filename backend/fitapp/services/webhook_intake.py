"""Webhook intake — verify, deduplicate, dispatch, and record Stripe events.

Verified events are always acknowledged: a handler failure is rolled back,
written to the ``webhook_events`` ledger as ``failed`` and reported in the
response body instead of an error status, so Stripe does not retry-storm a
poison event. A redelivery of a failed event is dispatched again.
"""

import asyncio
import logging
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing.snapshots import ts_to_naive
from fitapp.billing.stripe_client import construct_webhook_event
from fitapp.billing.webhooks import EVENT_HANDLERS
from fitapp.config import settings
from fitapp.database import utcnow
from fitapp.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


async def get_webhook_event(db: AsyncSession, stripe_event_id: str) -> WebhookEvent | None:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
    )
    return result.scalar_one_or_none()


async def dispatch_event(db: AsyncSession, event: stripe.Event) -> str:
    """Run the handler for ``event``; returns the ledger status to record."""
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.debug("Unhandled Stripe event type: %s", event.type)
        return "ignored"
    await asyncio.wait_for(handler(db, event), timeout=settings.webhook_timeout_seconds)
    return "processed"


async def handle_stripe_event(db: AsyncSession, event: stripe.Event) -> dict[str, Any]:
    """Process one verified event exactly once (per retention window)."""
    seen = await get_webhook_event(db, event.id)
    if seen is not None and seen.status != "failed":
        logger.info("Duplicate Stripe event %s (%s), already %s", event.id, event.type, seen.status)
        return {"received": True, "duplicate": True}

    logger.info("Received Stripe event: %s (%s)", event.type, event.id)
    record = seen or WebhookEvent(
        stripe_event_id=event.id,
        event_type=event.type,
        event_created_at=ts_to_naive(getattr(event, "created", None)),
        received_at=utcnow(),
        status="failed",
    )

    try:
        async with db.begin_nested():
            status = await dispatch_event(db, event)
    except Exception as e:
        logger.exception("Error processing Stripe event %s (%s)", event.id, event.type)
        error = f"{type(e).__name__}: {e}"
        record.status = "failed"
        record.error = error
        record.received_at = utcnow()
        db.add(record)
        await db.commit()
        return {"received": True, "error": error}

    record.status = status
    record.error = None
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event committed first
        await db.rollback()
        logger.info("Stripe event %s was processed concurrently", event.id)
        return {"received": True, "duplicate": True}
    return {"received": True, "status": status}


async def process_stripe_webhook(db: AsyncSession, payload: bytes, sig_header: str) -> dict[str, Any]:
    """Verify a raw webhook delivery and process it.

    Raises BadSignature before anything is written.
    """
    event = construct_webhook_event(payload, sig_header)
    return await handle_stripe_event(db, event)
