from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from creator_billing.core.ddb import as_int
from creator_billing.core.errors import LockContention, UnknownPayout
from creator_billing.core.settings import S
from creator_billing.core.time import cycle_month, now_ts
from creator_billing.metrics import LOCK_CONTENTION
from creator_billing.services import ledger
from creator_billing.services.billing import charge_reference_prefix, finalize_charge_success
from creator_billing.services.fees import fee_for_subscription
from creator_billing.services.locks import LockService, acquire_with_retry, get_lock_service, subscription_billing_lock_key
from creator_billing.services.paystack import PaystackClient, get_processor, verify_signature
from creator_billing.services.profiles import get_profile
from creator_billing.services.reminders import dispatch_side_effect, schedule_payout_reminder
from creator_billing.services.subscriptions import get_subscription

logger = logging.getLogger(__name__)

EVENT_CHARGE_SUCCESS = "charge.success"
EVENT_TRANSFER_SUCCESS = "transfer.success"
EVENT_TRANSFER_FAILED = "transfer.failed"
EVENT_TRANSFER_REVERSED = "transfer.reversed"


def verify_paystack_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    return verify_signature(raw_body, signature)


def _is_current_cycle(sub: Mapping[str, Any], reference: str) -> bool:
    period_end = as_int(sub.get("current_period_end"))
    return reference.startswith(charge_reference_prefix(sub["subscription_id"], cycle_month(period_end)))


def handle_charge_success(
    event: Mapping[str, Any],
    *,
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    processor: Optional[PaystackClient] = None,
) -> str:
    """Processor-confirmed recurring renewal.

    Runs under the same lock as the billing jobs. The succeeded row is keyed by
    the charge reference, so a charge the job already recorded is not written
    twice, and the period only moves when the reference belongs to the cycle
    the subscription is currently in.
    """
    data = event.get("data") or {}
    metadata = data.get("metadata") or {}
    reference = data.get("reference") or ""
    sub_id = metadata.get("subscription_id")
    if not reference or not sub_id or not metadata.get("is_recurring"):
        return "ignored"

    now = now or now_ts()
    locks = locks or get_lock_service()
    processor = processor or get_processor()
    key = subscription_billing_lock_key(sub_id)

    token = acquire_with_retry(locks, key, S.billing_lock_ttl_ms)
    if not token:
        LOCK_CONTENTION.labels(scope="webhook").inc()
        raise LockContention(key)
    try:
        sub = get_subscription(sub_id)
        if not sub:
            logger.warning("charge.success %s for unknown subscription %s", reference, sub_id)
            return "ignored"
        profile = get_profile(sub.get("creator_id", "")) or {}
        fee = fee_for_subscription(sub, profile.get("purpose"))
        if as_int(data.get("amount")) and as_int(data.get("amount")) != fee.gross_cents:
            logger.warning("charge.success %s amount %s differs from expected %s", reference, data.get("amount"), fee.gross_cents)

        if not _is_current_cycle(sub, reference):
            # An earlier cycle, already advanced past; only make sure it is on the ledger.
            created = ledger.record_charge_succeeded(
                sub, fee, event_id=reference, reference=reference, now=now,
                extra={"processor_transaction_id": str(data["id"]) if data.get("id") else None},
            )
            return "recorded" if created else "duplicate"

        problems = finalize_charge_success(
            sub, fee, reference, data, now=now, locks=locks, processor=processor, profile=profile,
        )
        if problems:
            logger.error("charge.success %s left reconciliation work: %s", reference, "; ".join(problems))
        return "applied"
    finally:
        locks.release(key, token)


def handle_transfer_event(event: Mapping[str, Any], *, now: Optional[int] = None) -> str:
    data = event.get("data") or {}
    reference = data.get("reference") or ""
    if not reference:
        return "ignored"
    succeeded = event.get("event") == EVENT_TRANSFER_SUCCESS
    status = ledger.STATUS_SUCCEEDED if succeeded else ledger.STATUS_FAILED
    payment_id = ledger.payout_payment_id(reference)

    if not ledger.update_payout_status(payment_id, status, reason=data.get("reason") if not succeeded else None):
        if not ledger.get_payment(payment_id):
            # Not ours yet, or not ours at all; a non-2xx makes Paystack redeliver.
            raise UnknownPayout(reference)
        logger.info("Transfer %s: no pending payout to move to %s", reference, status)
        return "duplicate"

    payment = ledger.get_payment(payment_id) or {}
    logger.info("Payout %s is now %s", payment_id, status)
    dispatch_side_effect(
        "payout_reminder",
        schedule_payout_reminder,
        payment.get("creator_id", ""),
        payment_id,
        succeeded,
        now=now,
    )
    return "applied"


def handle_event(event: Mapping[str, Any], **kwargs: Any) -> str:
    kind = event.get("event")
    if kind == EVENT_CHARGE_SUCCESS:
        return handle_charge_success(event, **kwargs)
    if kind in (EVENT_TRANSFER_SUCCESS, EVENT_TRANSFER_FAILED, EVENT_TRANSFER_REVERSED):
        return handle_transfer_event(event, now=kwargs.get("now"))
    logger.info("Ignoring Paystack event %s", kind)
    return "ignored"


def summarize(event: Mapping[str, Any], outcome: str) -> Dict[str, Any]:
    return {"event": event.get("event"), "reference": (event.get("data") or {}).get("reference"), "outcome": outcome}
