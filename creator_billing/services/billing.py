"""Recurring billing.

Per due subscription, under the subscription's billing lock:

    retry count (derived from the ledger)
      >= max and grace elapsed  -> past_due + reminder
      >= max within grace       -> skipped
    prerequisites missing       -> skipped (MissingPrerequisite)
    reference already succeeded -> finish the success steps, no new charge
    charge
      ok     -> succeeded row, period advance (+LTV net), payout, reminders
      failed -> failed row, payment-failed reminder, period untouched

Steps after a successful charge never undo it. When one of them fails the
subscription is flagged for manual reconciliation and processing continues.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from creator_billing.core.cursor import decode_cursor, encode_cursor
from creator_billing.core.ddb import as_int
from creator_billing.core.errors import MissingPrerequisite, PostSuccessWriteFailure, ProcessorError
from creator_billing.core.settings import S
from creator_billing.core.time import DAY_SECONDS, cycle_month, now_ts
from creator_billing.metrics import LOCK_CONTENTION, RECONCILIATION_ALERTS, record_charge
from creator_billing.services import activity, ledger
from creator_billing.services.fees import FeeBreakdown, fee_for_subscription, requires_manual_payout
from creator_billing.services.locks import LockService, get_lock_service, held_lock, subscription_billing_lock_key
from creator_billing.services.paystack import PaystackClient, get_processor, sanitize_reference
from creator_billing.services.profiles import get_email, get_profile
from creator_billing.services.reminders import (
    cancel_subscription_reminders,
    dispatch_side_effect,
    schedule_past_due_reminder,
    schedule_payment_failed_reminder,
    schedule_subscription_renewal_reminders,
)
from creator_billing.services.subscriptions import (
    advance_period,
    get_subscription,
    is_billable,
    iter_due_subscriptions,
    mark_past_due,
)

logger = logging.getLogger(__name__)

JOB_BILLING = "billing"


class ChargeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PAST_DUE = "past_due"
    ALREADY_CHARGED = "already_charged"
    LOCKED = "locked"
    NOT_DUE = "not_due"
    IN_GRACE = "in_grace"
    MISSING_PREREQUISITE = "missing_prerequisite"


_SKIP_OUTCOMES = (
    ChargeOutcome.ALREADY_CHARGED,
    ChargeOutcome.LOCKED,
    ChargeOutcome.NOT_DUE,
    ChargeOutcome.IN_GRACE,
    ChargeOutcome.MISSING_PREREQUISITE,
)


@dataclass
class ChargeAttempt:
    outcome: ChargeOutcome
    reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BillingResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    next_cursor: Optional[str] = None

    def add_error(self, subscription_id: str, error: str) -> None:
        self.errors.append({"subscriptionId": subscription_id, "error": error})

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "nextCursor": self.next_cursor,
        }


def charge_reference_prefix(subscription_id: str, billing_cycle: str) -> str:
    return sanitize_reference(f"REC-{subscription_id}-{billing_cycle}-A")


def generate_charge_reference(subscription_id: str, billing_cycle: str, attempt: int) -> str:
    """Same (subscription, cycle, attempt) always yields the same reference.

    The processor rejects a reused reference, so a retried HTTP call cannot
    charge the same attempt twice.
    """
    return f"{charge_reference_prefix(subscription_id, billing_cycle)}{int(attempt)}"


def payout_reference(charge_reference: str) -> str:
    return sanitize_reference(f"PAYOUT-{charge_reference}")


def _check_prerequisites(sub: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    sub_id = sub["subscription_id"]
    if not sub.get("authorization_code"):
        raise MissingPrerequisite(sub_id, "authorization_code")
    email = sub.get("subscriber_email") or get_email(sub.get("subscriber_id", ""))
    if not email:
        raise MissingPrerequisite(sub_id, "subscriber_email")
    profile = get_profile(sub.get("creator_id", "")) or {}
    if requires_manual_payout(sub):
        if not profile.get("paystack_recipient_code"):
            raise MissingPrerequisite(sub_id, "creator bank details")
    elif not profile.get("paystack_subaccount_code"):
        raise MissingPrerequisite(sub_id, "creator subaccount")
    return email, profile


def _reconcile(sub: Mapping[str, Any], step: str, exc: BaseException, reference: str) -> str:
    failure = PostSuccessWriteFailure(sub["subscription_id"], step, exc)
    logger.error("%s (reference %s)", failure, reference)
    RECONCILIATION_ALERTS.labels(step=step).inc()
    activity.raise_ops_alert(
        activity.ACTIVITY_RECONCILIATION_REQUIRED,
        "Charge succeeded but follow-up failed",
        {
            "subscription_id": sub["subscription_id"],
            "creator_id": sub.get("creator_id"),
            "step": step,
            "reference": reference,
            "error": str(exc),
        },
    )
    return str(failure)


def _initiate_payout(
    sub: Mapping[str, Any],
    fee: FeeBreakdown,
    charge_reference: str,
    profile: Mapping[str, Any],
    processor: PaystackClient,
    now: int,
) -> Optional[str]:
    """Transfer the creator's net for one charge. Returns an error string on failure.

    The pending row goes in before the transfer starts; a transfer webhook can
    arrive before initiate_transfer returns.
    """
    ref = payout_reference(charge_reference)
    payment_id = ledger.payout_payment_id(ref)
    if ledger.get_payment(payment_id):
        return None
    if fee.net_cents <= 0:
        return None
    try:
        if not ledger.record_payout_pending(sub, fee, reference=ref, charge_reference=charge_reference, now=now):
            return None
    except Exception as exc:
        return _reconcile(sub, "payout_record", exc, charge_reference)
    try:
        transfer = processor.initiate_transfer(
            amount_cents=fee.net_cents,
            recipient_code=profile["paystack_recipient_code"],
            reason=f"Subscription payout {sub['subscription_id']}",
            reference=ref,
        )
    except ProcessorError as exc:
        try:
            ledger.update_payout_status(payment_id, ledger.STATUS_FAILED, reason=str(exc))
        except Exception:
            logger.exception("Could not mark payout %s failed", payment_id)
        return _reconcile(sub, "payout_transfer", exc, charge_reference)
    if transfer.get("transfer_code"):
        try:
            ledger.set_payout_transfer_code(payment_id, transfer["transfer_code"])
        except Exception as exc:
            return _reconcile(sub, "payout_record", exc, charge_reference)
    dispatch_side_effect(
        "payout_initiated_activity",
        activity.write_activity,
        sub.get("creator_id", ""),
        activity.ACTIVITY_PAYOUT_INITIATED,
        {"subscription_id": sub["subscription_id"], "reference": ref, "amount": fee.net_cents, "currency": fee.currency},
    )
    return None


def finalize_charge_success(
    sub: Mapping[str, Any],
    fee: FeeBreakdown,
    reference: str,
    charge: Mapping[str, Any],
    *,
    now: int,
    locks: LockService,
    processor: PaystackClient,
    record: bool = True,
    profile: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Everything that follows a successful charge. Caller holds the billing lock.

    Each step is idempotent so that a later run (or the webhook) can complete
    whatever an interrupted run left undone. Returns the reconciliation errors.
    """
    problems: List[str] = []
    if record:
        try:
            ledger.record_charge_succeeded(
                sub, fee, event_id=reference, reference=reference, now=now,
                extra={"processor_transaction_id": str(charge["id"]) if charge.get("id") else None},
            )
        except Exception as exc:
            # Without the ledger row the period stays put; the next run sees the
            # duplicate reference, verifies it and records it then.
            problems.append(_reconcile(sub, "ledger_write", exc, reference))
            return problems

    new_auth = (charge.get("authorization") or {}).get("authorization_code")
    new_end: Optional[int] = None
    try:
        new_end = advance_period(sub, fee.net_cents, authorization_code=new_auth, now=now)
    except Exception as exc:
        problems.append(_reconcile(sub, "period_advance", exc, reference))

    if requires_manual_payout(sub):
        creator_profile = profile if profile is not None else (get_profile(sub.get("creator_id", "")) or {})
        if creator_profile.get("paystack_recipient_code"):
            err = _initiate_payout(sub, fee, reference, creator_profile, processor, now)
            if err:
                problems.append(err)
        else:
            problems.append(_reconcile(sub, "payout_transfer", MissingPrerequisite(sub["subscription_id"], "creator bank details"), reference))

    if new_end:
        dispatch_side_effect(
            "payment_received_activity",
            activity.write_activity,
            sub.get("creator_id", ""),
            activity.ACTIVITY_PAYMENT_RECEIVED,
            {
                "subscription_id": sub["subscription_id"],
                "amount": fee.base_cents,
                "net": fee.net_cents,
                "currency": fee.currency,
                "provider": ledger.PROVIDER,
                "is_recurring": True,
            },
        )
        dispatch_side_effect(
            "renewal_reminders",
            schedule_subscription_renewal_reminders,
            sub["subscription_id"],
            now=now,
            locks=locks,
        )
    return problems


def _charge_or_verify(processor: PaystackClient, reference: str, **kwargs: Any) -> Dict[str, Any]:
    try:
        return processor.charge_authorization(reference=reference, **kwargs)
    except ProcessorError as exc:
        if exc.status_code == 402:
            raise
        # A reused reference is rejected; it may belong to a charge that
        # went through but was never recorded.
        try:
            data = processor.verify_transaction(reference)
        except ProcessorError:
            raise exc
        if data.get("status") == "success":
            logger.info("Reference %s already settled at processor; recording it", reference)
            return data
        raise


def _charge_locked(sub: Dict[str, Any], now: int, locks: LockService, processor: PaystackClient) -> ChargeAttempt:
    sub_id = sub["subscription_id"]
    period_end = as_int(sub.get("current_period_end"))

    failed = ledger.count_failed_since(sub_id, period_end)
    if failed >= S.max_retry_attempts:
        grace_end = period_end + S.grace_period_days * DAY_SECONDS
        if now < grace_end:
            return ChargeAttempt(ChargeOutcome.IN_GRACE)
        if mark_past_due(sub_id, now):
            logger.info("Subscription %s marked past_due after %d failed attempts", sub_id, failed)
            # Outstanding renewal and payment-failed notices are replaced by the past-due one.
            dispatch_side_effect("cancel_subscription_reminders", cancel_subscription_reminders, sub)
            dispatch_side_effect("past_due_reminder", schedule_past_due_reminder, sub, now=now, locks=locks)
            dispatch_side_effect(
                "past_due_activity",
                activity.write_activity,
                sub.get("creator_id", ""),
                activity.ACTIVITY_SUBSCRIPTION_PAST_DUE,
                {"subscription_id": sub_id, "failed_attempts": failed},
            )
        return ChargeAttempt(ChargeOutcome.PAST_DUE)

    email, profile = _check_prerequisites(sub)

    attempt = failed + 1
    reference = generate_charge_reference(sub_id, cycle_month(period_end), attempt)
    fee = fee_for_subscription(sub, profile.get("purpose"))

    if ledger.find_succeeded_by_reference(reference):
        logger.info("Reference %s already recorded for %s; completing follow-up steps", reference, sub_id)
        problems = finalize_charge_success(
            sub, fee, reference, {}, now=now, locks=locks, processor=processor, record=False, profile=profile,
        )
        return ChargeAttempt(ChargeOutcome.ALREADY_CHARGED, reference, "; ".join(problems) or None)

    try:
        charge = _charge_or_verify(
            processor,
            reference,
            authorization_code=sub["authorization_code"],
            email=email,
            amount_cents=fee.gross_cents,
            currency=fee.currency,
            subaccount_code=None if requires_manual_payout(sub) else profile.get("paystack_subaccount_code"),
            metadata={
                "subscription_id": sub_id,
                "creator_id": sub.get("creator_id"),
                "subscriber_id": sub.get("subscriber_id"),
                "interval": "month",
                "is_recurring": True,
                "billing_cycle": cycle_month(period_end),
                "attempt": attempt,
            },
        )
    except ProcessorError as exc:
        ledger.record_charge_failed(sub, fee, reference=reference, error=str(exc), attempt=attempt, now=now)
        logger.warning("Charge failed for %s (attempt %d/%d): %s", sub_id, attempt, S.max_retry_attempts, exc)
        dispatch_side_effect("payment_failed_reminder", schedule_payment_failed_reminder, sub, now=now, locks=locks)
        dispatch_side_effect(
            "payment_failed_activity",
            activity.write_activity,
            sub.get("creator_id", ""),
            activity.ACTIVITY_PAYMENT_FAILED,
            {"subscription_id": sub_id, "attempt": attempt, "reference": reference},
        )
        return ChargeAttempt(ChargeOutcome.FAILED, reference, str(exc))

    logger.info("Subscription %s charged: %s", sub_id, reference)
    problems = finalize_charge_success(
        sub, fee, reference, charge, now=now, locks=locks, processor=processor, profile=profile,
    )
    return ChargeAttempt(ChargeOutcome.SUCCEEDED, reference, "; ".join(problems) or None)


def charge_subscription(
    subscription_id: str,
    *,
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    processor: Optional[PaystackClient] = None,
) -> ChargeAttempt:
    """Lock, re-read, then charge one subscription. Shared by billing and retries."""
    now = now or now_ts()
    locks = locks or get_lock_service()
    processor = processor or get_processor()
    key = subscription_billing_lock_key(subscription_id)

    with held_lock(locks, key, S.billing_lock_ttl_ms) as token:
        if not token:
            LOCK_CONTENTION.labels(scope="billing").inc()
            logger.info("Subscription %s locked by another worker, skipping", subscription_id)
            return ChargeAttempt(ChargeOutcome.LOCKED)

        sub = get_subscription(subscription_id)
        if not sub or not is_billable(sub) or as_int(sub.get("current_period_end")) > now:
            return ChargeAttempt(ChargeOutcome.NOT_DUE)
        try:
            return _charge_locked(sub, now, locks, processor)
        except MissingPrerequisite as exc:
            logger.warning("Skipping %s: %s", subscription_id, exc)
            return ChargeAttempt(ChargeOutcome.MISSING_PREREQUISITE, error=str(exc))


def bill_one(subscription_id: str, result: BillingResult, job: str, **kwargs: Any) -> Optional[ChargeAttempt]:
    """Charge one subscription and fold the outcome into result. Never raises."""
    result.processed += 1
    try:
        attempt = charge_subscription(subscription_id, **kwargs)
    except Exception as exc:
        logger.exception("Billing %s failed unexpectedly", subscription_id)
        result.failed += 1
        result.add_error(subscription_id, str(exc) or type(exc).__name__)
        record_charge(job, "error")
        return None

    record_charge(job, attempt.outcome.value)
    if attempt.outcome == ChargeOutcome.SUCCEEDED:
        result.succeeded += 1
    elif attempt.outcome in (ChargeOutcome.FAILED, ChargeOutcome.PAST_DUE):
        result.failed += 1
    else:
        result.skipped += 1
    if attempt.error:
        result.add_error(subscription_id, attempt.error)
    return attempt


def process_recurring_billing(
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    processor: Optional[PaystackClient] = None,
    page_size: Optional[int] = None,
    cursor: Optional[str] = None,
    max_items: Optional[int] = None,
) -> BillingResult:
    """Charge every due subscription, page by page.

    With max_items set, stops after the page that reaches it and returns
    next_cursor for the caller to resume from.
    """
    now = now or now_ts()
    locks = locks or get_lock_service()
    processor = processor or get_processor()
    page_size = page_size or S.billing_page_size
    result = BillingResult()

    start_key = decode_cursor(cursor)
    while True:
        items, last_key = iter_due_subscriptions(now, page_size, start_key)
        for sub in items:
            bill_one(sub["subscription_id"], result, JOB_BILLING, now=now, locks=locks, processor=processor)
        if not last_key:
            break
        start_key = last_key
        if max_items and result.processed >= max_items:
            result.next_cursor = encode_cursor(last_key)
            break

    logger.info(
        "Billing complete: %d succeeded, %d failed, %d skipped",
        result.succeeded, result.failed, result.skipped,
    )
    return result
