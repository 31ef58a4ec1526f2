"""Payment-provider error taxonomy.

Stripe exception classes are translated into these at the gateway boundary so
nothing above ``fitapp.billing.stripe_client`` depends on the SDK's error types.
"""


class InvalidPlan(ValueError):
    """Plan tag outside the fixed enumeration."""

    def __init__(self, plan: str) -> None:
        super().__init__(f"Invalid plan: {plan!r}")
        self.plan = plan


class ProviderError(Exception):
    """Base class for classified payment-provider failures."""

    kind = "other"

    def __init__(self, message: str, *, provider_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_code = provider_code


class BadSignature(ProviderError):
    kind = "bad_signature"


class ProviderNotFound(ProviderError):
    kind = "not_found"


class InvalidPaymentMethod(ProviderError):
    kind = "invalid_payment_method"


class NetworkError(ProviderError):
    """Timeouts, connection failures and rate limiting; safe to retry later."""

    kind = "network"


class ProviderConflict(ProviderError):
    kind = "conflict"


class ProviderOther(ProviderError):
    kind = "other"
