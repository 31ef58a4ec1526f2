"""Async Stripe API wrapper — the only module that talks to the payment provider.

The ``StripeClient`` handle is created lazily on first use so importing this
module never requires Stripe configuration. All SDK exceptions are classified
into ``fitapp.billing.errors`` before they leave this module.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import stripe
from stripe import StripeClient

from fitapp.billing.errors import (
    BadSignature,
    InvalidPaymentMethod,
    NetworkError,
    ProviderConflict,
    ProviderError,
    ProviderNotFound,
    ProviderOther,
)
from fitapp.config import settings

logger = logging.getLogger(__name__)

_client: StripeClient | None = None
_http_client: stripe.HTTPXClient | None = None

# Request errors that point at the card / payment method rather than our params
_PAYMENT_METHOD_CODES = {
    "payment_method_invalid_parameter",
    "payment_method_not_available",
    "payment_method_unactivated",
    "payment_method_unexpected_state",
    "payment_intent_payment_attempt_failed",
    "card_declined",
    "expired_card",
    "incorrect_cvc",
    "incorrect_number",
}


def get_stripe_client() -> StripeClient:
    """Return the process-wide StripeClient, creating it on first call."""
    global _client, _http_client
    if _client is None:
        if not settings.stripe_secret_key:
            raise ProviderOther("STRIPE_SECRET_KEY is not configured")
        _http_client = stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds)
        _client = StripeClient(
            settings.stripe_secret_key,
            http_client=_http_client,
            max_network_retries=settings.stripe_max_network_retries,
        )
        logger.info("Initialized Stripe client (%s environment)", settings.billing_environment)
    return _client


async def close_stripe_client() -> None:
    """Release the HTTP transport and forget the handle."""
    global _client, _http_client
    if _http_client is not None:
        await _http_client.close_async()
    _client = None
    _http_client = None


def classify_stripe_error(error: Exception) -> ProviderError:
    """Map a Stripe SDK exception onto the provider error taxonomy."""
    if isinstance(error, stripe.SignatureVerificationError):
        return BadSignature(str(error))
    if not isinstance(error, stripe.StripeError):
        return ProviderOther(str(error))

    message = error.user_message or str(error)
    code = error.code
    if isinstance(error, stripe.CardError):
        return InvalidPaymentMethod(message, provider_code=code)
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return NetworkError(message, provider_code=code)
    if isinstance(error, stripe.IdempotencyError) or error.http_status == 409:
        return ProviderConflict(message, provider_code=code)
    if isinstance(error, stripe.InvalidRequestError):
        param = getattr(error, "param", None) or ""
        if "payment_method" in param or code in _PAYMENT_METHOD_CODES:
            return InvalidPaymentMethod(message, provider_code=code)
        if code == "resource_missing" or error.http_status == 404:
            return ProviderNotFound(message, provider_code=code)
    return ProviderOther(message, provider_code=code)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as e:
        classified = classify_stripe_error(e)
        logger.warning("Stripe %s failed (%s): %s", operation, classified.kind, classified.message)
        raise classified from e


async def find_or_create_customer(
    email: str,
    metadata: dict[str, str] | None = None,
    payment_method_id: str | None = None,
) -> stripe.Customer:
    """Return the Stripe customer for ``email``, creating one if none exists."""
    client = get_stripe_client()
    with _translate_errors("customer lookup"):
        existing = await client.v1.customers.list_async(params={"email": email, "limit": 1})
    if existing.data:
        customer = existing.data[0]
        if payment_method_id:
            await attach_payment_method(customer.id, payment_method_id)
        logger.info("Reusing Stripe customer %s for %s", customer.id, email)
        return customer

    params: dict[str, Any] = {"email": email, "metadata": metadata or {}}
    if payment_method_id:
        params["payment_method"] = payment_method_id
        params["invoice_settings"] = {"default_payment_method": payment_method_id}
    with _translate_errors("customer create"):
        customer = await client.v1.customers.create_async(params=params)
    logger.info("Created Stripe customer %s for %s", customer.id, email)
    return customer


async def attach_payment_method(customer_id: str, payment_method_id: str) -> None:
    """Attach a payment method and make it the customer's invoice default."""
    client = get_stripe_client()
    with _translate_errors("payment method attach"):
        await client.v1.payment_methods.attach_async(
            payment_method_id, params={"customer": customer_id}
        )
        await client.v1.customers.update_async(
            customer_id,
            params={"invoice_settings": {"default_payment_method": payment_method_id}},
        )


async def retrieve_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a customer; deleted customers come back with ``deleted=True``."""
    client = get_stripe_client()
    with _translate_errors("customer retrieve"):
        return await client.v1.customers.retrieve_async(customer_id)


async def list_recurring_prices_for_product(product_id: str) -> list[stripe.Price]:
    """List the active recurring prices attached to a product."""
    client = get_stripe_client()
    with _translate_errors("price list"):
        prices = await client.v1.prices.list_async(
            params={"product": product_id, "active": True, "type": "recurring", "limit": 10}
        )
    return list(prices.data)


async def retrieve_price(price_id: str) -> stripe.Price:
    client = get_stripe_client()
    with _translate_errors("price retrieve"):
        return await client.v1.prices.retrieve_async(price_id)


async def create_subscription(
    customer_id: str,
    price_id: str,
    payment_method_id: str | None = None,
    metadata: dict[str, str] | None = None,
) -> stripe.Subscription:
    """Create a subscription server-side, charging the default payment method."""
    client = get_stripe_client()
    params: dict[str, Any] = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "metadata": metadata or {},
        "expand": ["latest_invoice.payment_intent"],
    }
    if payment_method_id:
        params["default_payment_method"] = payment_method_id
    logger.info("Creating subscription for customer %s, price %s", customer_id, price_id)
    with _translate_errors("subscription create"):
        return await client.v1.subscriptions.create_async(params=params)


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    with _translate_errors("subscription retrieve"):
        return await client.v1.subscriptions.retrieve_async(subscription_id)


async def update_subscription(
    subscription_id: str,
    price_id: str | None = None,
    cancel_at_period_end: bool | None = None,
    metadata: dict[str, str] | None = None,
) -> stripe.Subscription:
    """Patch a subscription. Price changes are prorated."""
    client = get_stripe_client()
    params: dict[str, Any] = {}
    if price_id is not None:
        current = await get_subscription(subscription_id)
        items = current["items"]
        if not items or not items.data:
            raise ProviderOther(f"Subscription {subscription_id} has no items to update")
        params["items"] = [{"id": items.data[0].id, "price": price_id}]
        params["proration_behavior"] = "create_prorations"
    if cancel_at_period_end is not None:
        params["cancel_at_period_end"] = cancel_at_period_end
    if metadata is not None:
        params["metadata"] = metadata
    with _translate_errors("subscription update"):
        return await client.v1.subscriptions.update_async(subscription_id, params=params)


async def cancel_subscription(subscription_id: str, at_period_end: bool) -> stripe.Subscription:
    """Flag the subscription to cancel at period end, or cancel it immediately."""
    if at_period_end:
        return await update_subscription(subscription_id, cancel_at_period_end=True)
    client = get_stripe_client()
    with _translate_errors("subscription cancel"):
        return await client.v1.subscriptions.cancel_async(subscription_id)


async def create_checkout_session(
    customer_id: str,
    mode: str,
    line_items: list[dict[str, Any]],
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str] | None = None,
) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session."""
    client = get_stripe_client()
    logger.info("Creating %s checkout session for customer %s", mode, customer_id)
    with _translate_errors("checkout session create"):
        return await client.v1.checkout.sessions.create_async(
            params={
                "mode": mode,
                "customer": customer_id,
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata or {},
            }
        )


async def list_invoices(subscription_id: str) -> list[stripe.Invoice]:
    """List invoices billed for a subscription, newest first."""
    client = get_stripe_client()
    with _translate_errors("invoice list"):
        invoices = await client.v1.invoices.list_async(
            params={"subscription": subscription_id, "limit": 100}
        )
    return list(invoices.data)


def construct_webhook_event(
    payload: bytes, sig_header: str, secret: str | None = None
) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    secret = secret if secret is not None else settings.stripe_webhook_secret
    if not secret:
        raise BadSignature("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise BadSignature("Missing stripe-signature header")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        raise BadSignature("Invalid signature") from e
    except ValueError as e:
        raise BadSignature("Invalid payload") from e
