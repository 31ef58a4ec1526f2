"""Subscription API endpoints — plans, checkout, status, and owner commands."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.api.deps import ensure_database_ready, get_current_user, get_db
from fitapp.billing.plans import get_all_plans_with_pricing
from fitapp.config import settings
from fitapp.database import utcnow
from fitapp.models.user import SubscriptionProjection, User
from fitapp.schemas.subscription import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    CreateSubscriptionRequest,
    InvoiceListResponse,
    InvoiceResponse,
    PlanResponse,
    PlansListResponse,
    ProjectionResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from fitapp.services import subscription_service
from fitapp.services.subscription_store import list_by_user

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(ensure_database_ready)],
)


def _projection_response(projection: SubscriptionProjection) -> ProjectionResponse:
    # The sweep may not have run yet, so a lapsed period is judged at read time
    return ProjectionResponse(
        is_active=projection.is_active_at(utcnow()),
        plan=projection.plan,
        status=projection.status,
        stripe_subscription_id=projection.stripe_subscription_id,
        stripe_price_id=projection.stripe_price_id,
        current_period_start=projection.current_period_start,
        current_period_end=projection.current_period_end,
        cancel_at_period_end=projection.cancel_at_period_end,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    plans = await get_all_plans_with_pricing()
    return PlansListResponse(
        plans=[
            PlanResponse(
                plan=p.tag.value,
                display_name=p.display_name,
                duration_months=p.duration_months,
                amount=p.amount,
                currency=p.currency,
                display_price=p.display_price,
                savings=p.savings,
                price_id=p.price_id,
            )
            for p in plans
        ]
    )


@router.post("/checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid plan."""
    success_url = (
        body.success_url
        or f"{settings.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = body.cancel_url or f"{settings.frontend_url}/subscription/plans"
    session = await subscription_service.start_checkout(
        db, current_user, body.plan, success_url, cancel_url
    )
    await db.commit()
    return CheckoutResponse(session_id=session["session_id"], url=session["url"])


@router.post("/create", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Create a subscription directly with a Stripe.js payment method."""
    subscription = await subscription_service.create_direct_subscription(
        db, current_user, body.email, body.payment_method_id, body.plan
    )
    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    current_user: User = Depends(get_current_user),
) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        has_active_subscription=current_user.has_active_subscription(),
        status=current_user.subscription_status or "free",
        plan=current_user.subscription_plan,
        current_period_end=current_user.current_period_end,
        cancel_at_period_end=current_user.cancel_at_period_end,
    )


@router.get("/user/current", response_model=ProjectionResponse)
async def get_current_subscription(
    current_user: User = Depends(get_current_user),
) -> ProjectionResponse:
    """The user's subscription projection (free when they never subscribed)."""
    return _projection_response(current_user.projection)


@router.get("/user/all", response_model=SubscriptionListResponse)
async def list_own_subscriptions(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionListResponse:
    subscriptions = await list_by_user(db, current_user.id)
    return SubscriptionListResponse(
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions]
    )


@router.delete("/{subscription_id}/cancel", response_model=ProjectionResponse)
async def cancel_subscription(
    subscription_id: str,
    body: CancelRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ProjectionResponse:
    """Cancel at period end (default) or immediately."""
    at_period_end = body.at_period_end if body is not None else True
    projection = await subscription_service.cancel_subscription(
        db, current_user, subscription_id, at_period_end=at_period_end
    )
    await db.commit()
    return _projection_response(projection)


@router.post("/{subscription_id}/resume", response_model=ProjectionResponse)
async def resume_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ProjectionResponse:
    projection = await subscription_service.resume_subscription(db, current_user, subscription_id)
    await db.commit()
    return _projection_response(projection)


@router.post("/{subscription_id}/plan", response_model=SubscriptionResponse)
async def change_plan(
    subscription_id: str,
    body: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Move the subscription to another paid plan (prorated)."""
    subscription = await subscription_service.change_plan(
        db, current_user, subscription_id, body.plan
    )
    await db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.get("/{subscription_id}/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> InvoiceListResponse:
    invoices = await subscription_service.list_invoices(db, current_user, subscription_id)
    return InvoiceListResponse(invoices=[InvoiceResponse(**invoice) for invoice in invoices])
