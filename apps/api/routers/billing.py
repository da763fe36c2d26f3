"""Billing router: the signature-verified Stripe webhook."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from routers.deps import get_billing_service
from services.billing import BillingService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    billing: BillingService = Depends(get_billing_service),
):
    """Verify, then apply. Responds 200 once verified even if application fails."""
    payload = await request.body()
    event = billing.verify_webhook(payload, request.headers.get("stripe-signature"))
    outcome = await billing.process_event(event)
    logger.info("Webhook %s (%s) -> %s", event.get("id"), event.get("type"), outcome)
    return {"received": True, "outcome": outcome}
