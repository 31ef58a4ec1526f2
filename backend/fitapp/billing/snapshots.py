"""Normalized views of provider objects.

Stripe objects are read defensively: fields moved between API versions
(period bounds live on the subscription item since 2025-08-27, an invoice's
subscription lives under ``parent.subscription_details`` in the same release),
and the fakes used in tests only implement attribute and bracket access.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Attribute access that treats None objects and None values alike."""
    if obj is None:
        return default
    value = getattr(obj, name, default)
    return default if value is None else value


def _first_item(stripe_sub: Any) -> Any:
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (AttributeError, KeyError, TypeError):
        return None
    if sub_items and getattr(sub_items, "data", None):
        return sub_items.data[0]
    return None


def object_id(value: Any) -> str | None:
    """Expanded references arrive as objects, collapsed ones as plain ids."""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


def metadata_dict(obj: Any) -> dict[str, str]:
    """Plain-dict copy of ``obj.metadata``.

    ``StripeObject`` is not a ``dict`` subclass in current SDKs and keeps its
    keys behind ``to_dict()``; webhook payloads parsed elsewhere may be dicts.
    """
    metadata = get_field(obj, "metadata", {})
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return dict(metadata)


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-side subscription reduced to the fields we reconcile."""

    id: str
    customer_id: str | None
    status: str
    price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    amount: int | None
    currency: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, stripe_sub: Any) -> "ProviderSubscription":
        item = _first_item(stripe_sub)
        price = get_field(item, "price")
        period_start = get_field(item, "current_period_start", get_field(stripe_sub, "current_period_start"))
        period_end = get_field(item, "current_period_end", get_field(stripe_sub, "current_period_end"))
        return cls(
            id=stripe_sub.id,
            customer_id=object_id(get_field(stripe_sub, "customer")),
            status=get_field(stripe_sub, "status", "active"),
            price_id=object_id(price),
            current_period_start=ts_to_naive(period_start),
            current_period_end=ts_to_naive(period_end),
            cancel_at_period_end=bool(get_field(stripe_sub, "cancel_at_period_end", False)),
            canceled_at=ts_to_naive(get_field(stripe_sub, "canceled_at")),
            amount=get_field(price, "unit_amount"),
            currency=get_field(price, "currency"),
            metadata=metadata_dict(stripe_sub),
        )


@dataclass(frozen=True)
class ProviderInvoice:
    """Provider-side invoice reduced to the fields kept in history."""

    id: str
    subscription_id: str | None
    amount_paid: int
    currency: str | None
    status: str | None
    paid_at: datetime | None
    due_at: datetime | None
    hosted_invoice_url: str | None
    created_at: datetime | None

    @classmethod
    def from_stripe(cls, invoice: Any) -> "ProviderInvoice":
        subscription_id = object_id(get_field(invoice, "subscription"))
        if subscription_id is None:
            details = get_field(get_field(invoice, "parent"), "subscription_details")
            subscription_id = object_id(get_field(details, "subscription"))
        paid_ts = get_field(get_field(invoice, "status_transitions"), "paid_at")
        return cls(
            id=invoice.id,
            subscription_id=subscription_id,
            amount_paid=get_field(invoice, "amount_paid", 0),
            currency=get_field(invoice, "currency"),
            status=get_field(invoice, "status"),
            paid_at=ts_to_naive(paid_ts),
            due_at=ts_to_naive(get_field(invoice, "due_date")),
            hosted_invoice_url=get_field(invoice, "hosted_invoice_url"),
            created_at=ts_to_naive(get_field(invoice, "created")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "stripe_invoice_id": self.id,
            "amount": self.amount_paid,
            "currency": self.currency,
            "status": self.status,
            "paid_at": self.paid_at,
            "due_at": self.due_at,
            "url": self.hosted_invoice_url,
        }
