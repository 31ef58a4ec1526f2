"""Subscription maintenance — periodic sweeps and one-off repair jobs.

Sweeps work in batches of ``MAINTENANCE_BATCH_SIZE``, commit after each batch
and yield to the event loop between batches. All of them are idempotent: a
second run against the same clock changes nothing. ``dry_run`` counts what
would change without writing.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitapp.billing import stripe_client
from fitapp.billing.errors import InvalidPlan, ProviderError
from fitapp.billing.plans import VALID_PLAN_NAMES, calculate_period_end
from fitapp.billing.reconciliation import (
    CANCELED_PROJECTION,
    apply_subscription_to_user,
    expired_projection,
    mark_subscription_canceled,
    projection_for,
)
from fitapp.config import settings
from fitapp.database import async_session_factory, utcnow
from fitapp.models.user import User
from fitapp.services.subscription_store import (
    Source,
    count_canceled_before,
    count_webhook_events_before,
    delete_canceled_before,
    find_expired,
    find_linked_users,
    find_long_past_due,
    find_subscriptions_with_period,
    find_users_missing_status,
    get_subscription_by_stripe_id,
    load_user_by_id,
    prune_webhook_events,
    transition_user_projection,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

# Period ends within this distance of the computed one are left alone
PERIOD_END_TOLERANCE = timedelta(days=1)


@dataclass
class MaintenanceReport:
    expired: int = 0
    canceled_at_period_end: int = 0
    past_due_canceled: int = 0
    purged: int = 0
    pruned_events: int = 0
    dry_run: bool = False
    interrupted: bool = False


def _stopping(stop: asyncio.Event | None) -> bool:
    return stop is not None and stop.is_set()


async def _end_batch(db: AsyncSession, dry_run: bool) -> None:
    if not dry_run:
        await db.commit()
    await asyncio.sleep(0)


async def _cancel_user_subscription(db: AsyncSession, user: User, now: datetime, canceled_at: datetime) -> bool:
    """Cancel the user's linked row (if any) and reset the projection to canceled."""
    subscription = None
    if user.stripe_subscription_id:
        subscription = await get_subscription_by_stripe_id(db, user.stripe_subscription_id)
    if subscription is not None and subscription.status != "canceled":
        return await mark_subscription_canceled(
            db, subscription, source=Source.SWEEP, event_at=now, canceled_at=canceled_at
        )
    return await transition_user_projection(db, user, CANCELED_PROJECTION, source=Source.SWEEP, event_at=now)


async def expire_subscriptions(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    dry_run: bool = False,
    stop: asyncio.Event | None = None,
    report: MaintenanceReport | None = None,
) -> MaintenanceReport:
    """End projections whose period has passed.

    A subscription flagged to cancel at period end becomes ``canceled`` with its
    identifiers cleared; anything else becomes ``expired`` and keeps them.
    """
    now = now or utcnow()
    report = report or MaintenanceReport(dry_run=dry_run)
    async for batch in find_expired(db, now):
        for user in batch:
            if _stopping(stop):
                report.interrupted = True
                return report
            if user.cancel_at_period_end:
                if dry_run or await _cancel_user_subscription(db, user, now, user.current_period_end or now):
                    report.canceled_at_period_end += 1
            elif dry_run or await transition_user_projection(
                db, user, expired_projection(user.projection), source=Source.SWEEP, event_at=now
            ):
                report.expired += 1
        await _end_batch(db, dry_run)
    return report


async def cancel_long_past_due(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    grace_days: int | None = None,
    dry_run: bool = False,
    stop: asyncio.Event | None = None,
    report: MaintenanceReport | None = None,
) -> MaintenanceReport:
    """Cancel subscriptions that stayed ``past_due`` beyond the grace period."""
    now = now or utcnow()
    grace_days = settings.subscription_grace_days if grace_days is None else grace_days
    report = report or MaintenanceReport(dry_run=dry_run)
    async for batch in find_long_past_due(db, now, grace_days):
        for user in batch:
            if _stopping(stop):
                report.interrupted = True
                return report
            if dry_run:
                report.past_due_canceled += 1
                continue
            if user.stripe_subscription_id:
                try:
                    await stripe_client.cancel_subscription(user.stripe_subscription_id, at_period_end=False)
                except ProviderError as e:
                    logger.warning(
                        "Could not cancel past-due subscription %s at Stripe (%s)",
                        user.stripe_subscription_id,
                        e.kind,
                    )
            if await _cancel_user_subscription(db, user, now, now):
                report.past_due_canceled += 1
        await _end_batch(db, dry_run)
    return report


async def purge_canceled(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    retention_days: int | None = None,
    dry_run: bool = False,
    report: MaintenanceReport | None = None,
) -> MaintenanceReport:
    """Delete canceled subscription rows older than the retention window."""
    now = now or utcnow()
    retention_days = settings.canceled_retention_days if retention_days is None else retention_days
    report = report or MaintenanceReport(dry_run=dry_run)
    cutoff = now - timedelta(days=retention_days)
    if dry_run:
        report.purged += await count_canceled_before(db, cutoff)
        return report
    report.purged += await delete_canceled_before(db, cutoff)
    await db.commit()
    return report


async def prune_idempotency_keys(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    retention_days: int | None = None,
    dry_run: bool = False,
    report: MaintenanceReport | None = None,
) -> MaintenanceReport:
    """Forget processed webhook event ids older than the retention window."""
    now = now or utcnow()
    retention_days = settings.webhook_event_retention_days if retention_days is None else retention_days
    report = report or MaintenanceReport(dry_run=dry_run)
    cutoff = now - timedelta(days=retention_days)
    if dry_run:
        report.pruned_events += await count_webhook_events_before(db, cutoff)
        return report
    report.pruned_events += await prune_webhook_events(db, cutoff)
    await db.commit()
    return report


async def run_subscription_maintenance(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    dry_run: bool = False,
    stop: asyncio.Event | None = None,
) -> MaintenanceReport:
    """One full maintenance pass: expiry, past-due grace, retention, key pruning."""
    now = now or utcnow()
    report = MaintenanceReport(dry_run=dry_run)
    await expire_subscriptions(db, now, dry_run=dry_run, stop=stop, report=report)
    if not report.interrupted:
        await cancel_long_past_due(db, now, dry_run=dry_run, stop=stop, report=report)
    if not report.interrupted:
        await purge_canceled(db, now, dry_run=dry_run, report=report)
        await prune_idempotency_keys(db, now, dry_run=dry_run, report=report)
    logger.info("Subscription maintenance finished: %s", asdict(report))
    return report


# --- One-off repairs ---


async def reconcile_active_flags(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    dry_run: bool = False,
    stop: asyncio.Event | None = None,
) -> int:
    """Re-derive projections that disagree with the subscription row they point at.

    Only live rows (active/trialing with an unexpired period) and canceled rows
    are trusted; anything else is left for webhooks and the sweeps.
    """
    now = now or utcnow()
    fixed = 0
    async for batch in find_linked_users(db):
        for user in batch:
            if _stopping(stop):
                return fixed
            subscription = await get_subscription_by_stripe_id(db, user.stripe_subscription_id)
            if subscription is None:
                logger.warning(
                    "User %s points at unknown subscription %s", user.id, user.stripe_subscription_id
                )
                continue
            live = subscription.is_active and (
                subscription.current_period_end is None or subscription.current_period_end > now
            )
            if not live and subscription.status != "canceled":
                continue
            desired = projection_for(subscription, user.projection)
            if desired == user.projection:
                continue
            logger.info("Projection of user %s out of sync with %s", user.id, subscription.stripe_subscription_id)
            if dry_run or await transition_user_projection(
                db, user, desired, source=Source.SWEEP, event_at=now
            ):
                fixed += 1
        await _end_batch(db, dry_run)
    return fixed


async def fix_period_ends(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    plan: str | None = None,
    dry_run: bool = False,
    stop: asyncio.Event | None = None,
) -> int:
    """Recompute period ends from plan duration where they drifted by more than a day."""
    now = now or utcnow()
    fixed = 0
    async for batch in find_subscriptions_with_period(db, plan=plan):
        for subscription in batch:
            if _stopping(stop):
                return fixed
            if subscription.plan not in VALID_PLAN_NAMES:
                continue
            try:
                expected = calculate_period_end(subscription.plan, subscription.current_period_start)
            except InvalidPlan:
                continue
            actual = subscription.current_period_end
            if actual is not None and abs(actual - expected) <= PERIOD_END_TOLERANCE:
                continue
            logger.info(
                "Subscription %s period end %s -> %s", subscription.stripe_subscription_id, actual, expected
            )
            if dry_run:
                fixed += 1
                continue
            result = await upsert_subscription(
                db,
                subscription.stripe_subscription_id,
                {"current_period_end": expected},
                source=Source.SWEEP,
                event_at=now,
            )
            if not result.applied:
                continue
            fixed += 1
            user = await load_user_by_id(db, subscription.user_id)
            if user is not None and user.stripe_subscription_id == subscription.stripe_subscription_id:
                await apply_subscription_to_user(db, user, result.subscription, Source.SWEEP, now)
        await _end_batch(db, dry_run)
    return fixed


async def backfill_statuses(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    dry_run: bool = False,
) -> int:
    """Give users created before status tracking a status consistent with their flags."""
    now = now or utcnow()
    filled = 0
    async for batch in find_users_missing_status(db):
        for user in batch:
            if user.subscription_is_active:
                ended = user.current_period_end is not None and user.current_period_end <= now
                status = "expired" if ended else "active"
            else:
                status = "inactive" if user.stripe_subscription_id else "free"
            projection = replace(user.projection, status=status, is_active=status == "active")
            if dry_run or await transition_user_projection(
                db, user, projection, source=Source.SWEEP, event_at=now
            ):
                filled += 1
        await _end_batch(db, dry_run)
    return filled


class MaintenanceScheduler:
    """Runs ``run_subscription_maintenance`` on a fixed interval in the background."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        interval_hours: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        hours = settings.maintenance_interval_hours if interval_hours is None else interval_hours
        self.check_interval = hours * 3600
        self.is_running = False
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start the scheduler background loop."""
        if self.is_running:
            logger.warning("Maintenance scheduler is already running")
            return
        self.is_running = True
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Maintenance scheduler started - sweeping every %.1f hours", self.check_interval / 3600
        )

    async def stop(self) -> None:
        """Stop the scheduler, letting an in-flight sweep finish its current item."""
        if not self.is_running:
            return
        self.is_running = False
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Maintenance scheduler stopped")

    async def run_once(self) -> MaintenanceReport:
        async with self.session_factory() as db:
            try:
                return await run_subscription_maintenance(db, stop=self._stop)
            except Exception:
                await db.rollback()
                raise

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Subscription maintenance failed: %s", e, exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass
