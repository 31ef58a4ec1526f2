"""Pydantic v2 request/response schemas for subscription endpoints.

The mobile and web clients speak camelCase; fields are declared in snake_case
and aliased on the wire.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Request schemas ---


class CheckoutRequest(CamelModel):
    """Request to create a Stripe Checkout session."""

    plan: str
    success_url: str | None = None
    cancel_url: str | None = None


class CreateSubscriptionRequest(CamelModel):
    """Server-side subscription with a payment method collected by Stripe.js."""

    email: str = Field(min_length=3)
    payment_method_id: str = Field(min_length=1)
    plan: str


class CancelRequest(CamelModel):
    at_period_end: bool = True


class ChangePlanRequest(CamelModel):
    plan: str


# --- Response schemas ---


class PlanResponse(CamelModel):
    """Plan details for display."""

    plan: str
    display_name: str
    duration_months: int
    amount: int  # minor units
    currency: str
    display_price: str
    savings: str | None = None
    price_id: str | None = None


class PlansListResponse(CamelModel):
    plans: list[PlanResponse]


class CheckoutResponse(CamelModel):
    """Stripe Checkout session URL returned to frontend."""

    session_id: str
    url: str


class ProjectionResponse(CamelModel):
    """The user's embedded subscription projection."""

    is_active: bool
    plan: str | None
    status: str
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionStatusResponse(CamelModel):
    has_active_subscription: bool
    status: str
    plan: str | None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class InvoiceResponse(CamelModel):
    stripe_invoice_id: str
    amount: int
    currency: str | None = None
    status: str | None = None
    paid_at: datetime | None = None
    due_at: datetime | None = None
    url: str | None = None


class SubscriptionResponse(CamelModel):
    """One subscription row as stored locally."""

    stripe_subscription_id: str
    stripe_customer_id: str | None = None
    stripe_price_id: str | None = None
    plan: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    amount: int | None = None
    currency: str
    billing_environment: str
    created_at: datetime
    invoices: list[InvoiceResponse] = []


class SubscriptionListResponse(CamelModel):
    subscriptions: list[SubscriptionResponse]


class InvoiceListResponse(CamelModel):
    invoices: list[InvoiceResponse]
