"""API tests for /api/v1/subscriptions: the checkout-to-expiry lifecycle and the read endpoints."""

import time
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.billing.errors import ProviderOther
from fitapp.database import utcnow
from fitapp.models.subscription import Subscription
from fitapp.models.user import User
from fitapp.services.maintenance import expire_subscriptions
from fitapp.services.webhook_intake import handle_stripe_event

from billing_factories import (
    DAY,
    StripeObj,
    make_checkout_session,
    make_event,
    make_invoice,
    make_stripe_sub,
    seed_subscription,
)

pytestmark = pytest.mark.asyncio

BASE = "/api/v1/subscriptions"


def _gateway(name: str, **kwargs):
    return patch(f"fitapp.billing.stripe_client.{name}", new=AsyncMock(**kwargs))


async def _subscription_count(db: AsyncSession) -> int:
    return await db.scalar(select(func.count()).select_from(Subscription))


class TestSubscriptionLifecycle:
    """Checkout, activation by webhook, replay, cancel, payment failure, ownership."""

    period_start = int(time.time()) - DAY

    def _stripe_sub(self, **overrides) -> StripeObj:
        values = {"sub_id": "sub_A", "customer": "cus_u1", "period_start": self.period_start}
        values.update(overrides)
        return make_stripe_sub(**values)

    async def _checkout(self, client: AsyncClient, headers: dict) -> dict:
        with _gateway("find_or_create_customer", return_value=StripeObj(id="cus_u1")), _gateway(
            "create_checkout_session",
            return_value=StripeObj(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1"),
        ) as create_session:
            response = await client.post(
                f"{BASE}/checkout-session",
                json={"plan": "1-month", "successUrl": "https://x/s", "cancelUrl": "https://x/c"},
                headers=headers,
            )
        assert response.status_code == 200
        kwargs = create_session.await_args.kwargs
        assert kwargs["success_url"] == "https://x/s"
        assert kwargs["line_items"] == [{"price": "price_1m", "quantity": 1}]
        return response.json()

    async def _activate(self, db: AsyncSession, user: User):
        created = int(time.time()) - 60
        checkout = make_event(
            "checkout.session.completed",
            make_checkout_session(
                subscription="sub_A", customer="cus_u1", metadata={"user_id": str(user.id)}
            ),
            created=created,
        )
        with _gateway("get_subscription", return_value=self._stripe_sub()):
            await handle_stripe_event(db, checkout)
        sub_created = make_event(
            "customer.subscription.created", self._stripe_sub(), created=created, event_id="evt_sub_created"
        )
        await handle_stripe_event(db, sub_created)
        return sub_created

    async def test_checkout_links_customer(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        body = await self._checkout(client, auth_headers)

        assert body == {"sessionId": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}
        assert test_user.stripe_customer_id == "cus_u1"
        assert test_user.billing_environment == "production"
        assert await _subscription_count(db_session) == 0

    async def test_webhooks_activate_and_replay_is_harmless(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await self._checkout(client, auth_headers)
        sub_created = await self._activate(db_session, test_user)

        row = (await db_session.execute(select(Subscription))).scalar_one()
        assert row.plan == "1-month"
        assert row.status == "active"
        assert row.checkout_session_id == "cs_test_1"
        first_updated_at = row.updated_at

        response = await client.get(f"{BASE}/user/current", headers=auth_headers)
        assert response.status_code == 200
        current = response.json()
        assert current["isActive"] is True
        assert current["plan"] == "1-month"
        assert current["stripeSubscriptionId"] == "sub_A"

        assert await handle_stripe_event(db_session, sub_created) == {"received": True, "duplicate": True}
        assert await _subscription_count(db_session) == 1
        assert row.updated_at == first_updated_at

    async def test_cancel_at_period_end_then_expire(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await self._checkout(client, auth_headers)
        await self._activate(db_session, test_user)

        with _gateway("cancel_subscription", return_value=self._stripe_sub(cancel_at_period_end=True)) as cancel:
            response = await client.request(
                "DELETE", f"{BASE}/sub_A/cancel", json={"atPeriodEnd": True}, headers=auth_headers
            )

        assert response.status_code == 200
        cancel.assert_awaited_once_with("sub_A", at_period_end=True)
        body = response.json()
        assert body["cancelAtPeriodEnd"] is True
        assert body["isActive"] is True

        report = await expire_subscriptions(db_session, test_user.current_period_end + timedelta(days=1))

        assert report.canceled_at_period_end == 1
        assert test_user.subscription_status == "canceled"
        assert test_user.stripe_subscription_id is None
        assert test_user.stripe_price_id is None
        assert not test_user.has_active_subscription()

    async def test_payment_failure_then_recovery(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await self._checkout(client, auth_headers)
        await self._activate(db_session, test_user)
        now = int(time.time())

        await handle_stripe_event(
            db_session,
            make_event("invoice.payment_failed", make_invoice("in_1", "sub_A", status="open"), created=now - 30),
        )
        assert test_user.subscription_status == "past_due"
        assert test_user.subscription_is_active is True

        await handle_stripe_event(
            db_session,
            make_event("invoice.payment_succeeded", make_invoice("in_2", "sub_A"), created=now - 20),
        )
        assert test_user.subscription_status == "active"
        assert test_user.subscription_plan == "1-month"
        assert test_user.stripe_subscription_id == "sub_A"
        assert test_user.has_active_subscription()

        response = await client.get(f"{BASE}/status", headers=auth_headers)
        assert response.json()["hasActiveSubscription"] is True

    async def test_other_user_cannot_cancel(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
        auth_headers: dict,
        other_auth_headers: dict,
    ):
        await self._checkout(client, auth_headers)
        await self._activate(db_session, test_user)

        with _gateway("cancel_subscription") as cancel:
            response = await client.delete(f"{BASE}/sub_A/cancel", headers=other_auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        cancel.assert_not_awaited()
        row = (await db_session.execute(select(Subscription))).scalar_one()
        assert row.status == "active"
        assert row.cancel_at_period_end is False


class TestCommands:
    async def test_create_subscription(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        stripe_sub = make_stripe_sub(sub_id="sub_direct", customer="cus_direct")
        with _gateway("find_or_create_customer", return_value=StripeObj(id="cus_direct")), _gateway(
            "create_subscription", return_value=stripe_sub
        ):
            response = await client.post(
                f"{BASE}/create",
                json={"email": test_user.email, "paymentMethodId": "pm_card_visa", "plan": "1-month"},
                headers=auth_headers,
            )

        assert response.status_code == 201
        body = response.json()
        assert body["stripeSubscriptionId"] == "sub_direct"
        assert body["plan"] == "1-month"
        assert body["billingEnvironment"] == "production"
        assert test_user.has_active_subscription()

    async def test_cancel_without_body_defaults_to_period_end(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await seed_subscription(db_session, test_user, sub_id="sub_seeded")
        stripe_sub = make_stripe_sub(
            sub_id="sub_seeded", customer=test_user.stripe_customer_id, cancel_at_period_end=True
        )
        with _gateway("cancel_subscription", return_value=stripe_sub) as cancel:
            response = await client.delete(f"{BASE}/sub_seeded/cancel", headers=auth_headers)
        assert response.status_code == 200
        cancel.assert_awaited_once_with("sub_seeded", at_period_end=True)

    async def test_resume(self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict):
        await seed_subscription(db_session, test_user, sub_id="sub_seeded", cancel_at_period_end=True)
        stripe_sub = make_stripe_sub(sub_id="sub_seeded", customer=test_user.stripe_customer_id)
        with _gateway("update_subscription", return_value=stripe_sub):
            response = await client.post(f"{BASE}/sub_seeded/resume", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["cancelAtPeriodEnd"] is False

    async def test_change_plan(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await seed_subscription(db_session, test_user, sub_id="sub_seeded")
        stripe_sub = make_stripe_sub(
            "price_3m", sub_id="sub_seeded", customer=test_user.stripe_customer_id, unit_amount=2799
        )
        with _gateway("update_subscription", return_value=stripe_sub):
            response = await client.post(
                f"{BASE}/sub_seeded/plan", json={"plan": "3-month"}, headers=auth_headers
            )
        assert response.status_code == 200
        assert response.json()["plan"] == "3-month"
        assert response.json()["amount"] == 2799

    async def test_invoices(self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict):
        await seed_subscription(db_session, test_user, sub_id="sub_seeded")
        with _gateway("list_invoices", return_value=[make_invoice("in_1", "sub_seeded")]):
            response = await client.get(f"{BASE}/sub_seeded/invoices", headers=auth_headers)
        assert response.status_code == 200
        invoice = response.json()["invoices"][0]
        assert invoice["stripeInvoiceId"] == "in_1"
        assert invoice["amount"] == 999
        assert invoice["url"] == "https://invoice.stripe.com/i/in_1"

    async def test_invalid_plan(self, client: AsyncClient, auth_headers: dict):
        response = await client.post(f"{BASE}/checkout-session", json={"plan": "2-month"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PLAN"

    async def test_malformed_body(self, client: AsyncClient, auth_headers: dict):
        response = await client.post(f"{BASE}/checkout-session", json={}, headers=auth_headers)
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert "plan" in body["error"]["message"]

    async def test_provider_outage_is_502(self, client: AsyncClient, auth_headers: dict):
        with _gateway("find_or_create_customer", side_effect=ProviderOther("boom")):
            response = await client.post(f"{BASE}/checkout-session", json={"plan": "1-month"}, headers=auth_headers)
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PAYMENT_PROVIDER_ERROR"


class TestReads:
    async def test_plans_are_public(self, client: AsyncClient):
        async def price(price_id):
            return StripeObj(id=price_id, unit_amount=1099 if price_id == "price_1m" else None, currency="usd")

        with patch("fitapp.billing.stripe_client.retrieve_price", new=AsyncMock(side_effect=price)):
            response = await client.get(f"{BASE}/plans")

        assert response.status_code == 200
        plans = {p["plan"]: p for p in response.json()["plans"]}
        assert list(plans) == ["free", "1-month", "3-month", "6-month", "12-month"]
        assert plans["1-month"]["amount"] == 1099
        assert plans["3-month"]["amount"] == 2799
        assert plans["12-month"]["priceId"] == "price_12m"
        assert "durationMonths" in plans["free"]

    async def test_plans_fall_back_when_stripe_is_down(self, client: AsyncClient):
        # No Stripe key is configured in tests
        response = await client.get(f"{BASE}/plans")
        assert response.status_code == 200
        amounts = [p["amount"] for p in response.json()["plans"][1:]]
        assert amounts == [999, 2799, 4999, 8999]

    async def test_status_for_free_user(self, client: AsyncClient, auth_headers: dict):
        response = await client.get(f"{BASE}/status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {
            "hasActiveSubscription": False,
            "status": "free",
            "plan": "free",
            "currentPeriodEnd": None,
            "cancelAtPeriodEnd": False,
        }

    async def test_current_for_free_user(self, client: AsyncClient, auth_headers: dict):
        body = (await client.get(f"{BASE}/user/current", headers=auth_headers)).json()
        assert body["isActive"] is False
        assert body["status"] == "free"
        assert body["stripeSubscriptionId"] is None

    async def test_current_is_inactive_once_period_lapses(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        ended = utcnow() - timedelta(days=10)
        await seed_subscription(
            db_session, test_user, period_start=ended - timedelta(days=30), period_end=ended
        )
        # No expiry sweep has run, the stored flag still says active
        assert test_user.subscription_is_active is True

        current = (await client.get(f"{BASE}/user/current", headers=auth_headers)).json()
        state = (await client.get(f"{BASE}/status", headers=auth_headers)).json()

        assert current["isActive"] is False
        assert current["status"] == "active"
        assert state["hasActiveSubscription"] is False

    async def test_list_all_newest_first(
        self, client: AsyncClient, db_session: AsyncSession, test_user: User, auth_headers: dict
    ):
        await seed_subscription(db_session, test_user, sub_id="sub_old", status="canceled")
        await seed_subscription(db_session, test_user, sub_id="sub_new")
        response = await client.get(f"{BASE}/user/all", headers=auth_headers)
        assert response.status_code == 200
        ids = [s["stripeSubscriptionId"] for s in response.json()["subscriptions"]]
        assert ids == ["sub_new", "sub_old"]

    async def test_requires_authentication(self, client: AsyncClient):
        response = await client.get(f"{BASE}/status")
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {"code": "AUTHENTICATION_REQUIRED", "message": "Authentication required"},
        }

    async def test_health_and_root(self, client: AsyncClient):
        health = await client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        root = await client.get("/")
        assert root.json()["docs"] == "/docs"
