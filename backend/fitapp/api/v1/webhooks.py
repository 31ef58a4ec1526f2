"""Stripe webhook endpoint — receives and processes Stripe events."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.api.deps import get_db
from fitapp.billing.errors import BadSignature
from fitapp.errors import ValidationError
from fitapp.services.webhook_intake import process_stripe_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Receive and process Stripe webhook events.

    Anything that passes signature verification is acknowledged with 200, even
    when its handler fails (see ``fitapp.services.webhook_intake``).
    """
    # Raw bytes are required for signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        return await process_stripe_webhook(db, payload, sig_header)
    except BadSignature as e:
        logger.warning("Webhook signature verification failed: %s", e.message)
        raise ValidationError(e.message, code="INVALID_SIGNATURE") from e
