"""Payments table: the idempotency ledger.

Succeeded charges are keyed by the processor-side event id, so a conditional
put is enough to make "record this success" exactly-once. Failed attempts are
appended with unique ids; counting them is how retry attempts are derived.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Iterator, List, Mapping, Optional

from boto3.dynamodb.conditions import Attr, Key

from creator_billing.core.ddb import as_int, is_conditional_failure, query_all
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import now_ts
from creator_billing.services.fees import FeeBreakdown

logger = logging.getLogger(__name__)

PROVIDER = "paystack"

TYPE_RECURRING = "recurring"
TYPE_ONE_TIME = "one_time"
TYPE_PAYOUT = "payout"

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"

PAYOUT_TERMINAL = (STATUS_SUCCEEDED, STATUS_FAILED)

MAX_ERROR_LEN = 500


def _ulidish() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def succeeded_payment_id(event_id: str, provider: str = PROVIDER) -> str:
    return f"charge#{provider}#{event_id}"


def payout_payment_id(reference: str) -> str:
    return f"payout#{reference}"


def _base_row(subscription: Mapping[str, Any], fee: FeeBreakdown, now: int) -> Dict[str, Any]:
    return {
        "subscription_id": subscription["subscription_id"],
        "creator_id": subscription.get("creator_id", ""),
        "subscriber_id": subscription.get("subscriber_id", ""),
        "gross_cents": fee.gross_cents,
        "fee_cents": fee.fee_cents,
        "net_cents": fee.net_cents,
        "subscriber_fee_cents": fee.subscriber_fee_cents,
        "creator_fee_cents": fee.creator_fee_cents,
        "currency": fee.currency,
        "fee_model": fee.fee_model,
        "provider": PROVIDER,
        "created_at": now,
    }


def get_payment(payment_id: str) -> Optional[Dict[str, Any]]:
    return T.payments.get_item(Key={"payment_id": payment_id}).get("Item")


def record_charge_succeeded(
    subscription: Mapping[str, Any],
    fee: FeeBreakdown,
    *,
    event_id: str,
    reference: str,
    payment_type: str = TYPE_RECURRING,
    now: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> bool:
    """Returns False when a succeeded row for this event id already exists."""
    item = _base_row(subscription, fee, now or now_ts())
    item.update({
        "payment_id": succeeded_payment_id(event_id),
        "type": payment_type,
        "status": STATUS_SUCCEEDED,
        "external_event_id": event_id,
        "reference": reference,
    })
    if extra:
        item.update({k: v for k, v in extra.items() if v is not None})
    try:
        T.payments.put_item(Item=item, ConditionExpression=Attr("payment_id").not_exists())
        return True
    except Exception as exc:
        if is_conditional_failure(exc):
            logger.info("Charge %s already recorded for subscription %s", event_id, subscription["subscription_id"])
            return False
        raise


def record_charge_failed(
    subscription: Mapping[str, Any],
    fee: FeeBreakdown,
    *,
    reference: str,
    error: str,
    attempt: int,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    item = _base_row(subscription, fee, now or now_ts())
    item.update({
        "payment_id": f"fail#{reference}#{_ulidish()}",
        "type": TYPE_RECURRING,
        "status": STATUS_FAILED,
        "reference": reference,
        "attempt": int(attempt),
        "error_message": (error or "")[:MAX_ERROR_LEN],
    })
    T.payments.put_item(Item=item)
    return item


def find_succeeded_by_reference(reference: str) -> Optional[Dict[str, Any]]:
    it = get_payment(succeeded_payment_id(reference))
    if it and it.get("status") == STATUS_SUCCEEDED:
        return it
    return None


def _failed_since(subscription_id: str, since_ts: int) -> Iterator[Dict[str, Any]]:
    return query_all(
        T.payments,
        IndexName=S.payments_subscription_index,
        KeyConditionExpression=Key("subscription_id").eq(subscription_id) & Key("created_at").gte(int(since_ts)),
        FilterExpression=Attr("status").eq(STATUS_FAILED) & Attr("type").eq(TYPE_RECURRING),
        ScanIndexForward=False,
    )


def count_failed_since(subscription_id: str, since_ts: int) -> int:
    """Failed recurring attempts since since_ts. This is the retry count; it is never stored."""
    return sum(1 for _ in _failed_since(subscription_id, since_ts))


def last_failed_since(subscription_id: str, since_ts: int) -> Optional[Dict[str, Any]]:
    for it in _failed_since(subscription_id, since_ts):
        return it
    return None


def recent_failed_recurring(since_ts: int) -> List[Dict[str, Any]]:
    """Failed recurring rows created at or after since_ts, newest first."""
    rows = query_all(
        T.payments,
        IndexName=S.payments_status_index,
        KeyConditionExpression=Key("status").eq(STATUS_FAILED) & Key("created_at").gte(int(since_ts)),
        FilterExpression=Attr("type").eq(TYPE_RECURRING),
        ScanIndexForward=False,
    )
    out = list(rows)
    out.sort(key=lambda r: as_int(r.get("created_at")), reverse=True)
    return out


def record_payout_pending(
    subscription: Mapping[str, Any],
    fee: FeeBreakdown,
    *,
    reference: str,
    charge_reference: str,
    transfer_code: Optional[str] = None,
    now: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Write the pending payout row. Returns None when the row already exists.

    Written before the transfer is started, so a transfer webhook always finds
    a row to settle.
    """
    item = _base_row(subscription, fee, now or now_ts())
    item.update({
        "payment_id": payout_payment_id(reference),
        "type": TYPE_PAYOUT,
        "status": STATUS_PENDING,
        "reference": reference,
        "charge_reference": charge_reference,
        "amount_cents": fee.net_cents,
    })
    if transfer_code:
        item["transfer_code"] = transfer_code
    try:
        T.payments.put_item(Item=item, ConditionExpression=Attr("payment_id").not_exists())
    except Exception as exc:
        if is_conditional_failure(exc):
            logger.info("Payout %s already recorded", reference)
            return None
        raise
    return item


def set_payout_transfer_code(payment_id: str, transfer_code: str) -> None:
    T.payments.update_item(
        Key={"payment_id": payment_id},
        UpdateExpression="SET #c = :c",
        ConditionExpression=Attr("payment_id").exists(),
        ExpressionAttributeNames={"#c": "transfer_code"},
        ExpressionAttributeValues={":c": transfer_code},
    )


def update_payout_status(payment_id: str, status: str, reason: Optional[str] = None) -> bool:
    """pending -> succeeded|failed. Any other transition is refused (returns False)."""
    if status not in PAYOUT_TERMINAL:
        raise ValueError(f"Invalid payout status: {status}")
    names = {"#s": "status", "#u": "updated_at"}
    values: Dict[str, Any] = {":s": status, ":t": now_ts()}
    expr = "SET #s = :s, #u = :t"
    if reason:
        names["#r"] = "failure_reason"
        values[":r"] = reason[:MAX_ERROR_LEN]
        expr += ", #r = :r"
    try:
        T.payments.update_item(
            Key={"payment_id": payment_id},
            UpdateExpression=expr,
            ConditionExpression=Attr("type").eq(TYPE_PAYOUT) & Attr("status").eq(STATUS_PENDING),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
        return True
    except Exception as exc:
        if is_conditional_failure(exc):
            return False
        raise
