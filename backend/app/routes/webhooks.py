"""Stripe webhook route.

Hold confirmations arrive here. Every event is acknowledged unless the ledger
could not apply it, in which case a 5xx makes Stripe redeliver it.
"""

import asyncio
import logging

from fastapi import APIRouter, Header, HTTPException, Request, status

from gigledger.errors import ErrorCode, ValidationError
from gigledger.payments.events import HoldOutcome, verify_and_parse

from ..config import get_settings
from ..database import Engine
from ..errors import raise_for_outcome
from ..rate_limit import limiter

logger = logging.getLogger("gigledger.api.webhooks")
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
@limiter.limit("300/minute")
async def stripe_webhook(
    request: Request,
    engine: Engine,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
):
    """Verify a Stripe event and apply it to the ledger."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook not configured",
        )
    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header",
        )

    payload = await request.body()
    try:
        event = verify_and_parse(payload, stripe_signature, settings.stripe_webhook_secret)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())

    if event is None:
        return {"received": True, "action": "IGNORED"}

    logger.info(f"Webhook {event.event_id} | hold={event.hold_id} | {event.outcome.value}")
    if event.outcome == HoldOutcome.SUCCEEDED:
        outcome = await asyncio.to_thread(
            engine.on_escrow_hold_succeeded, event.hold_id, event.payment_id
        )
    else:
        outcome = await asyncio.to_thread(
            engine.on_escrow_hold_failed, event.hold_id, event.payment_id
        )

    if not outcome.ok and outcome.error.code == ErrorCode.ORPHAN_EVENT:
        return {"received": True, "orphan": True}
    result = raise_for_outcome(outcome)
    return {
        "received": True,
        "action": result.action.value,
        "payment_id": result.payment_id,
        "contract_completed": result.contract_completed,
    }
