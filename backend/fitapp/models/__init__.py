"""SQLAlchemy models for FitApp billing.

All models are imported here so that Base.metadata knows every table
before create_all runs. If you add a new model, import it in this file.
"""

from fitapp.models.purchase import Purchase
from fitapp.models.subscription import Subscription, SubscriptionInvoice
from fitapp.models.user import User
from fitapp.models.webhook_event import WebhookEvent

__all__ = [
    "Purchase",
    "Subscription",
    "SubscriptionInvoice",
    "User",
    "WebhookEvent",
]
