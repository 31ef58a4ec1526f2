"""Tests for the reconciliation core: status mapping, projections, drift, provider sync."""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing.plans import UNKNOWN_PLAN
from fitapp.billing.reconciliation import (
    CANCELED_PROJECTION,
    apply_subscription_to_user,
    expired_projection,
    mark_subscription_canceled,
    normalize_status,
    projection_for,
    subscription_fields,
    sync_provider_subscription,
)
from fitapp.billing.snapshots import ProviderSubscription
from fitapp.database import utcnow
from fitapp.models.subscription import Subscription
from fitapp.models.user import FREE_PROJECTION, SubscriptionProjection, User
from fitapp.services.subscription_store import Source, upsert_subscription

from billing_factories import create_user, make_stripe_sub, seed_subscription


def _row(status: str, sub_id: str = "sub_1", **overrides) -> Subscription:
    values = {
        "stripe_subscription_id": sub_id,
        "stripe_price_id": "price_1m",
        "plan": "1-month",
        "status": status,
        "current_period_start": datetime(2025, 1, 1),
        "current_period_end": datetime(2025, 2, 1),
        "cancel_at_period_end": False,
    }
    values.update(overrides)
    return Subscription(**values)


class TestNormalizeStatus:
    def test_known_statuses_pass_through(self):
        for status in ("active", "trialing", "past_due", "unpaid", "canceled"):
            assert normalize_status(status) == status

    def test_provider_only_statuses(self):
        assert normalize_status("incomplete") == "inactive"
        assert normalize_status("incomplete_expired") == "canceled"
        assert normalize_status("paused") == "inactive"

    def test_unrecognized_or_missing(self):
        assert normalize_status("something_new") == "inactive"
        assert normalize_status(None) == "inactive"


class TestSubscriptionFields:
    def test_omits_values_the_provider_left_out(self):
        snapshot = ProviderSubscription.from_stripe(make_stripe_sub(unit_amount=None))
        fields = subscription_fields(snapshot, "1-month")
        assert "canceled_at" not in fields
        # Fallback pricing fills the gap for known plans
        assert fields["amount"] == 999
        assert fields["plan"] == "1-month"
        assert fields["status"] == "active"

    def test_unknown_plan_without_amount(self):
        snapshot = ProviderSubscription.from_stripe(make_stripe_sub("price_legacy", unit_amount=None))
        fields = subscription_fields(snapshot, UNKNOWN_PLAN)
        assert "amount" not in fields


class TestProjectionFor:
    def test_active_row(self):
        projection = projection_for(_row("active"), FREE_PROJECTION)
        assert projection.is_active is True
        assert projection.plan == "1-month"
        assert projection.stripe_subscription_id == "sub_1"
        assert projection.current_period_end == datetime(2025, 2, 1)

    def test_trialing_is_active(self):
        assert projection_for(_row("trialing"), FREE_PROJECTION).is_active is True

    def test_canceled_clears_identifiers(self):
        assert projection_for(_row("canceled"), FREE_PROJECTION) == CANCELED_PROJECTION
        assert CANCELED_PROJECTION.plan == "free"
        assert CANCELED_PROJECTION.stripe_subscription_id is None

    def test_past_due_keeps_current_access(self):
        current = SubscriptionProjection(is_active=False, stripe_subscription_id="sub_1", status="past_due")
        assert projection_for(_row("past_due"), current).is_active is False

    def test_past_due_on_new_row_grants_grace(self):
        assert projection_for(_row("past_due"), FREE_PROJECTION).is_active is True

    def test_unpaid_and_expired_are_inactive(self):
        assert projection_for(_row("unpaid"), FREE_PROJECTION).is_active is False
        assert projection_for(_row("expired"), FREE_PROJECTION).is_active is False

    def test_expired_projection_keeps_identifiers(self):
        current = projection_for(_row("active"), FREE_PROJECTION)
        expired = expired_projection(current)
        assert expired.status == "expired"
        assert expired.is_active is False
        assert expired.stripe_subscription_id == "sub_1"


@pytest.mark.asyncio
class TestApplySubscriptionToUser:
    """Projection drift: a non-current row only takes over when it is live."""

    async def test_inactive_other_row_does_not_take_over(self, db_session: AsyncSession, test_user: User):
        await seed_subscription(db_session, test_user, sub_id="sub_A")
        other = await upsert_subscription(
            db_session,
            "sub_B",
            {"user_id": test_user.id, "plan": "3-month", "status": "inactive", "currency": "usd"},
        )
        applied = await apply_subscription_to_user(db_session, test_user, other.subscription, Source.WEBHOOK)
        assert applied is False
        assert test_user.stripe_subscription_id == "sub_A"
        assert test_user.subscription_status == "active"

    async def test_active_other_row_takes_over(self, db_session: AsyncSession, test_user: User):
        await seed_subscription(db_session, test_user, sub_id="sub_A")
        other = await upsert_subscription(
            db_session,
            "sub_B",
            {"user_id": test_user.id, "plan": "3-month", "status": "active", "currency": "usd"},
        )
        applied = await apply_subscription_to_user(db_session, test_user, other.subscription, Source.WEBHOOK)
        assert applied is True
        assert test_user.stripe_subscription_id == "sub_B"
        assert test_user.subscription_plan == "3-month"

    async def test_canceled_other_row_leaves_projection(self, db_session: AsyncSession, test_user: User):
        await seed_subscription(db_session, test_user, sub_id="sub_B")
        old = await upsert_subscription(
            db_session,
            "sub_A",
            {"user_id": test_user.id, "plan": "1-month", "status": "active", "currency": "usd"},
            source=Source.COMMAND,
        )
        assert await mark_subscription_canceled(
            db_session, old.subscription, Source.WEBHOOK, event_at=utcnow()
        )
        assert old.subscription.status == "canceled"
        assert test_user.stripe_subscription_id == "sub_B"
        assert test_user.has_active_subscription()


@pytest.mark.asyncio
class TestSyncProviderSubscription:
    async def test_matches_user_by_customer(self, db_session: AsyncSession):
        user = await create_user(db_session, stripe_customer_id="cus_test_123")
        snapshot = ProviderSubscription.from_stripe(make_stripe_sub())

        subscription = await sync_provider_subscription(db_session, snapshot, Source.WEBHOOK, event_at=utcnow())

        assert subscription is not None
        assert subscription.user_id == user.id
        assert subscription.plan == "1-month"
        assert subscription.amount == 999
        assert user.subscription_is_active is True
        assert user.stripe_subscription_id == "sub_test_123"
        assert user.has_active_subscription()

    async def test_matches_user_by_metadata(self, db_session: AsyncSession, test_user: User):
        snapshot = ProviderSubscription.from_stripe(
            make_stripe_sub(customer="cus_unknown", metadata={"user_id": str(test_user.id)})
        )
        subscription = await sync_provider_subscription(db_session, snapshot, Source.WEBHOOK)
        assert subscription is not None
        assert subscription.user_id == test_user.id

    async def test_malformed_metadata_falls_through(self, db_session: AsyncSession, test_user: User):
        snapshot = ProviderSubscription.from_stripe(
            make_stripe_sub(customer="cus_unknown", metadata={"user_id": "not-a-uuid"})
        )
        subscription = await sync_provider_subscription(
            db_session, snapshot, Source.WEBHOOK, fallback_user_id=str(test_user.id)
        )
        assert subscription is not None
        assert subscription.user_id == test_user.id

    async def test_unmatched_subscription_is_not_stored(self, db_session: AsyncSession):
        snapshot = ProviderSubscription.from_stripe(
            make_stripe_sub(customer="cus_nobody", metadata={"user_id": str(uuid.uuid4())})
        )
        assert await sync_provider_subscription(db_session, snapshot, Source.WEBHOOK) is None
        count = await db_session.scalar(select(func.count()).select_from(Subscription))
        assert count == 0

    async def test_unknown_price_is_stored_as_unknown_plan(self, db_session: AsyncSession):
        await create_user(db_session, stripe_customer_id="cus_test_123")
        snapshot = ProviderSubscription.from_stripe(make_stripe_sub("price_legacy", unit_amount=1500))
        subscription = await sync_provider_subscription(db_session, snapshot, Source.WEBHOOK)
        assert subscription.plan == UNKNOWN_PLAN
        assert subscription.amount == 1500

    async def test_command_loses_tie_with_webhook(self, db_session: AsyncSession):
        user = await create_user(db_session, stripe_customer_id="cus_test_123")
        event_at = utcnow()
        await sync_provider_subscription(
            db_session, ProviderSubscription.from_stripe(make_stripe_sub()), Source.WEBHOOK, event_at
        )
        stale = ProviderSubscription.from_stripe(make_stripe_sub(cancel_at_period_end=True))

        subscription = await sync_provider_subscription(db_session, stale, Source.COMMAND, event_at, user=user)

        assert subscription.cancel_at_period_end is False
        assert user.cancel_at_period_end is False

    async def test_newer_command_applies(self, db_session: AsyncSession):
        user = await create_user(db_session, stripe_customer_id="cus_test_123")
        event_at = utcnow()
        await sync_provider_subscription(
            db_session, ProviderSubscription.from_stripe(make_stripe_sub()), Source.WEBHOOK, event_at
        )
        later = ProviderSubscription.from_stripe(make_stripe_sub(cancel_at_period_end=True))

        await sync_provider_subscription(
            db_session, later, Source.COMMAND, event_at + timedelta(seconds=1), user=user
        )

        assert user.cancel_at_period_end is True
        # Only webhooks move the webhook watermark
        assert user.last_webhook_event_at == event_at
