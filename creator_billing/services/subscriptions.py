from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key

from creator_billing.core.ddb import as_int, is_conditional_failure, query_all, query_page
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import add_months_capped, now_ts

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"

INTERVAL_MONTH = "month"
INTERVAL_ONE_TIME = "one_time"


def _renewing_filter():
    # one_time subscriptions and those cancelling at period end are never billed
    return Attr("interval").eq(INTERVAL_MONTH) & Attr("cancel_at_period_end").ne(True)


def get_subscription(subscription_id: str) -> Optional[Dict[str, Any]]:
    return T.subscriptions.get_item(Key={"subscription_id": subscription_id}).get("Item")


def is_billable(sub: Mapping[str, Any]) -> bool:
    return (
        sub.get("status") == STATUS_ACTIVE
        and sub.get("interval") == INTERVAL_MONTH
        and not sub.get("cancel_at_period_end")
    )


def iter_due_subscriptions(
    now: int,
    page_size: int,
    start_key: Optional[Dict[str, Any]] = None,
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """One page of active monthly subscriptions whose period ended at or before now.

    Pages follow the GSI key order, so rows advanced by this very run move past
    the cursor instead of shifting an offset.
    """
    return query_page(
        T.subscriptions,
        start_key,
        IndexName=S.subscriptions_due_index,
        KeyConditionExpression=Key("status").eq(STATUS_ACTIVE) & Key("current_period_end").lte(int(now)),
        FilterExpression=_renewing_filter(),
        ScanIndexForward=True,
        Limit=int(page_size),
    )


def iter_renewing_subscriptions(after: int) -> Iterator[Dict[str, Any]]:
    return query_all(
        T.subscriptions,
        IndexName=S.subscriptions_due_index,
        KeyConditionExpression=Key("status").eq(STATUS_ACTIVE) & Key("current_period_end").gt(int(after)),
        FilterExpression=_renewing_filter(),
    )


def advance_period(
    sub: Mapping[str, Any],
    net_cents: int,
    *,
    authorization_code: Optional[str] = None,
    now: Optional[int] = None,
) -> Optional[int]:
    """Move current_period_end forward one month and add net_cents to lifetime value.

    Conditional on the period end we read, so two paths confirming the same
    cycle advance it once. Returns the new period end, or None if another
    writer already moved it.
    """
    old_end = as_int(sub.get("current_period_end"))
    new_end = add_months_capped(old_end, 1)
    ts = now or now_ts()
    names = {"#e": "current_period_end", "#l": "ltv_cents", "#u": "updated_at", "#c": "last_charged_at"}
    values: Dict[str, Any] = {":e": new_end, ":z": 0, ":d": int(net_cents), ":t": ts, ":old": old_end}
    expr = "SET #e = :e, #l = if_not_exists(#l, :z) + :d, #u = :t, #c = :t"
    if authorization_code and authorization_code != sub.get("authorization_code"):
        names["#a"] = "authorization_code"
        values[":a"] = authorization_code
        expr += ", #a = :a"
    try:
        T.subscriptions.update_item(
            Key={"subscription_id": sub["subscription_id"]},
            UpdateExpression=expr,
            ConditionExpression=Attr("current_period_end").eq(old_end),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except Exception as exc:
        if is_conditional_failure(exc):
            logger.info("Period for %s already advanced past %s", sub["subscription_id"], old_end)
            return None
        raise
    return new_end


def mark_past_due(subscription_id: str, now: Optional[int] = None) -> bool:
    try:
        T.subscriptions.update_item(
            Key={"subscription_id": subscription_id},
            UpdateExpression="SET #s = :s, #u = :t, #p = :t",
            ConditionExpression=Attr("status").eq(STATUS_ACTIVE),
            ExpressionAttributeNames={"#s": "status", "#u": "updated_at", "#p": "past_due_at"},
            ExpressionAttributeValues={":s": STATUS_PAST_DUE, ":t": now or now_ts()},
        )
        return True
    except Exception as exc:
        if is_conditional_failure(exc):
            return False
        raise


def count_active_subscribers(creator_id: str) -> int:
    rows = query_all(
        T.subscriptions,
        IndexName=S.subscriptions_creator_index,
        KeyConditionExpression=Key("creator_id").eq(creator_id),
        FilterExpression=Attr("status").eq(STATUS_ACTIVE),
    )
    return sum(1 for _ in rows)
