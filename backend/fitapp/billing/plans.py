"""Plan catalog — the fixed plan enumeration, provider price resolution, and fallback pricing."""

import calendar
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from fitapp.billing import stripe_client
from fitapp.billing.errors import InvalidPlan, ProviderError
from fitapp.config import settings

logger = logging.getLogger(__name__)


class PlanTag(str, Enum):
    FREE = "free"
    ONE_MONTH = "1-month"
    THREE_MONTH = "3-month"
    SIX_MONTH = "6-month"
    TWELVE_MONTH = "12-month"


# Stored as-is when a subscription's price matches no known plan
UNKNOWN_PLAN = "unknown-plan"

PAID_PLANS: tuple[PlanTag, ...] = (
    PlanTag.ONE_MONTH,
    PlanTag.THREE_MONTH,
    PlanTag.SIX_MONTH,
    PlanTag.TWELVE_MONTH,
)

_CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£"}


@dataclass(frozen=True)
class Plan:
    """A plan from the fixed enumeration with its (possibly resolved) pricing."""

    tag: PlanTag
    display_name: str
    duration_months: int
    amount: int  # minor units (e.g., 999 = $9.99)
    currency: str = "usd"
    price_id: str | None = None  # None for free tier or when unresolved
    product_id: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.tag is not PlanTag.FREE

    @property
    def display_price(self) -> str:
        return format_amount(self.amount, self.currency)

    @property
    def savings(self) -> str | None:
        """Saving versus paying the 1-month fallback price for the same duration."""
        if self.duration_months <= 1:
            return None
        monthly_total = FALLBACK_PRICING[PlanTag.ONE_MONTH] * self.duration_months
        saved = monthly_total - self.amount
        return format_amount(saved, self.currency) if saved > 0 else None


# Static pricing used whenever the provider is unreachable or has no active price
FALLBACK_PRICING: dict[PlanTag, int] = {
    PlanTag.FREE: 0,
    PlanTag.ONE_MONTH: 999,
    PlanTag.THREE_MONTH: 2799,
    PlanTag.SIX_MONTH: 4999,
    PlanTag.TWELVE_MONTH: 8999,
}

PLANS: dict[PlanTag, Plan] = {
    PlanTag.FREE: Plan(PlanTag.FREE, "Free", 0, 0),
    PlanTag.ONE_MONTH: Plan(PlanTag.ONE_MONTH, "1 Month", 1, FALLBACK_PRICING[PlanTag.ONE_MONTH]),
    PlanTag.THREE_MONTH: Plan(PlanTag.THREE_MONTH, "3 Months", 3, FALLBACK_PRICING[PlanTag.THREE_MONTH]),
    PlanTag.SIX_MONTH: Plan(PlanTag.SIX_MONTH, "6 Months", 6, FALLBACK_PRICING[PlanTag.SIX_MONTH]),
    PlanTag.TWELVE_MONTH: Plan(PlanTag.TWELVE_MONTH, "12 Months", 12, FALLBACK_PRICING[PlanTag.TWELVE_MONTH]),
}

VALID_PLAN_NAMES: set[str] = {tag.value for tag in PlanTag}

# plan tag -> price id resolved from STRIPE_PRODUCT_<N>_MONTH at runtime
_resolved_price_ids: dict[str, str] = {}


def format_amount(amount: int, currency: str = "usd") -> str:
    """Format minor units for display, e.g. 2799 -> '$27.99'."""
    symbol = _CURRENCY_SYMBOLS.get(currency.lower(), "")
    text = f"{symbol}{amount / 100:.2f}"
    return text if symbol else f"{text} {currency.upper()}"


def parse_plan(tag: str) -> PlanTag:
    """Validate a plan tag. Raises InvalidPlan for anything outside the enumeration."""
    try:
        return PlanTag(tag)
    except ValueError:
        raise InvalidPlan(tag) from None


def get_plan(tag: str) -> Plan:
    """Get a plan by tag with configured/resolved provider identifiers filled in."""
    plan_tag = parse_plan(tag)
    plan = PLANS[plan_tag]
    if not plan.is_paid:
        return plan
    return replace(
        plan,
        currency=settings.stripe_currency,
        price_id=settings.configured_price_ids.get(plan_tag.value)
        or _resolved_price_ids.get(plan_tag.value),
        product_id=settings.configured_product_ids.get(plan_tag.value),
    )


async def resolve_price_id(product_id: str) -> str | None:
    """Return the single active recurring price for a product, or None.

    Provider failures and products without an active recurring price yield
    None; callers fall back to static pricing.
    """
    try:
        prices = await stripe_client.list_recurring_prices_for_product(product_id)
    except ProviderError as e:
        logger.warning("Could not resolve price for product %s (%s)", product_id, e.kind)
        return None
    if not prices:
        logger.warning("Product %s has no active recurring price", product_id)
        return None
    if len(prices) > 1:
        logger.warning(
            "Product %s has %d active recurring prices, using %s",
            product_id,
            len(prices),
            prices[0].id,
        )
    return prices[0].id


async def price_id_for_plan(tag: str) -> str | None:
    """Price ID to bill for a plan: configured price first, then product lookup."""
    plan = get_plan(tag)
    if plan.price_id:
        return plan.price_id
    if not plan.product_id:
        return None
    price_id = await resolve_price_id(plan.product_id)
    if price_id:
        _resolved_price_ids[plan.tag.value] = price_id
    return price_id


async def get_all_plans_with_pricing() -> list[Plan]:
    """All plans with live pricing where the provider answers, fallback otherwise."""
    plans = [PLANS[PlanTag.FREE]]
    for tag in PAID_PLANS:
        plan = get_plan(tag.value)
        price_id = await price_id_for_plan(tag.value)
        if price_id is None:
            plans.append(plan)
            continue
        try:
            price = await stripe_client.retrieve_price(price_id)
        except ProviderError as e:
            logger.warning("Using fallback pricing for %s (%s)", tag.value, e.kind)
            plans.append(replace(plan, price_id=price_id))
            continue
        plans.append(
            replace(
                plan,
                price_id=price_id,
                amount=price.unit_amount if price.unit_amount is not None else plan.amount,
                currency=price.currency or plan.currency,
            )
        )
    return plans


def plan_for_price_id(price_id: str | None) -> str:
    """Reverse lookup: price ID -> plan tag, or UNKNOWN_PLAN.

    Runtime-resolved price IDs are consulted first, then the configured
    STRIPE_PRICE_<N>_MONTH mapping.
    """
    if not price_id:
        return UNKNOWN_PLAN
    for tag, resolved in _resolved_price_ids.items():
        if resolved == price_id:
            return tag
    for tag, configured in settings.configured_price_ids.items():
        if configured == price_id:
            return tag
    return UNKNOWN_PLAN


def reset_price_cache() -> None:
    _resolved_price_ids.clear()


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping to the last day of a shorter month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_period_end(tag: str, start: datetime) -> datetime:
    """End of a billing period that starts at ``start`` for a paid plan."""
    plan = get_plan(tag)
    if not plan.is_paid:
        raise InvalidPlan(tag)
    return add_months(start, plan.duration_months)
