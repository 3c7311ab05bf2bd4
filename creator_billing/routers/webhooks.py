from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from creator_billing.core.errors import LockContention, UnknownPayout
from creator_billing.models import WebhookAck
from creator_billing.services.webhooks import handle_event, summarize, verify_paystack_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "x-paystack-signature"


@router.post("/webhooks/paystack", response_model=WebhookAck)
async def paystack_webhook(req: Request) -> Dict[str, Any]:
    raw_body = await req.body()
    if not verify_paystack_signature(raw_body, req.headers.get(SIGNATURE_HEADER)):
        raise HTTPException(401, "Invalid signature")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(400, "Invalid JSON payload") from exc
    if not isinstance(event, dict):
        raise HTTPException(400, "Invalid JSON payload")

    try:
        outcome = handle_event(event)
    except LockContention as exc:
        # Paystack redelivers on non-2xx; the billing run holding the lock finishes first.
        logger.info("Webhook deferred: %s", exc)
        raise HTTPException(409, "Subscription busy, retry later") from exc
    except UnknownPayout as exc:
        logger.warning("Webhook deferred: %s", exc)
        raise HTTPException(404, "Unknown payout reference") from exc

    logger.info("Paystack webhook handled: %s", summarize(event, outcome))
    return {"ok": True}
