"""Reminder scheduling.

A reminder is identified by (entity_type, entity_id, type); that triple is the
primary key of the reminders table, so there is at most one row per triple.
Scheduling is an upsert that never touches a row already ``sent`` and revives
``canceled`` rows. Cancelling only moves ``scheduled`` rows.

Subscription billing reminders use a per-cycle entity id
(``<subscription_id>:<YYYYMM>``) so each billing cycle gets its own renewal,
payment-failed and past-due notices.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from boto3.dynamodb.conditions import Attr, Key

from creator_billing.core.ddb import as_int, is_conditional_failure, query_all
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import DAY_SECONDS, HOUR_SECONDS, cycle_month, now_ts
from creator_billing.metrics import LOCK_CONTENTION, SIDE_EFFECT_FAILURES
from creator_billing.services import activity
from creator_billing.services.locks import LockService, get_lock_service, held_lock, reminder_schedule_lock_key
from creator_billing.services.profiles import get_profile, get_request
from creator_billing.services.subscriptions import get_subscription, is_billable, iter_renewing_subscriptions

logger = logging.getLogger(__name__)


class ReminderType(str, Enum):
    REQUEST_UNOPENED_24H = "request_unopened_24h"
    REQUEST_UNOPENED_72H = "request_unopened_72h"
    REQUEST_UNPAID_3D = "request_unpaid_3d"
    REQUEST_EXPIRING = "request_expiring"
    INVOICE_DUE_7D = "invoice_due_7d"
    INVOICE_DUE_3D = "invoice_due_3d"
    INVOICE_DUE_1D = "invoice_due_1d"
    INVOICE_OVERDUE_1D = "invoice_overdue_1d"
    INVOICE_OVERDUE_7D = "invoice_overdue_7d"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYROLL_READY = "payroll_ready"
    ONBOARDING_INCOMPLETE_24H = "onboarding_incomplete_24h"
    ONBOARDING_INCOMPLETE_72H = "onboarding_incomplete_72h"
    BANK_SETUP_INCOMPLETE = "bank_setup_incomplete"
    NO_SUBSCRIBERS_7D = "no_subscribers_7d"
    SUBSCRIPTION_RENEWAL_7D = "subscription_renewal_7d"
    SUBSCRIPTION_RENEWAL_3D = "subscription_renewal_3d"
    SUBSCRIPTION_RENEWAL_1D = "subscription_renewal_1d"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"


class ReminderChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELED = "canceled"
    FAILED = "failed"


ENTITY_SUBSCRIPTION = "subscription"
ENTITY_REQUEST = "request"
ENTITY_PAYOUT = "payout"
ENTITY_USER = "user"
ENTITY_PAYROLL = "payroll"

SMS_ELIGIBLE_TYPES: FrozenSet[ReminderType] = frozenset({
    ReminderType.INVOICE_DUE_1D,
    ReminderType.INVOICE_OVERDUE_1D,
    ReminderType.INVOICE_OVERDUE_7D,
    ReminderType.REQUEST_EXPIRING,
    ReminderType.PAYOUT_COMPLETED,
    ReminderType.PAYOUT_FAILED,
    ReminderType.BANK_SETUP_INCOMPLETE,
})

SMS_PREFERRED_COUNTRIES: FrozenSet[str] = frozenset({"NG", "KE", "ZA", "GH", "TZ", "UG"})

RENEWAL_OFFSETS: Tuple[Tuple[ReminderType, int], ...] = (
    (ReminderType.SUBSCRIPTION_RENEWAL_7D, 7),
    (ReminderType.SUBSCRIPTION_RENEWAL_3D, 3),
    (ReminderType.SUBSCRIPTION_RENEWAL_1D, 1),
)

TypeLike = Union[ReminderType, str]


def reminder_id(entity_type: str, entity_id: str, rtype: TypeLike) -> str:
    return f"{entity_type}#{entity_id}#{ReminderType(rtype).value}"


def entity_key(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}#{entity_id}"


def subscription_cycle_entity(subscription_id: str, period_end: int) -> str:
    return f"{subscription_id}:{cycle_month(period_end)}"


def parse_subscription_entity(entity_id: str) -> Tuple[str, Optional[str]]:
    sub_id, _, cycle = entity_id.partition(":")
    return sub_id, (cycle or None)


def get_reminder(rid: str) -> Optional[Dict[str, Any]]:
    return T.reminders.get_item(Key={"reminder_id": rid}).get("Item")


# ---------------------------------------------------------------------------
# Channel selection


def get_best_channel(user_id: str, rtype: TypeLike) -> ReminderChannel:
    """SMS only for payment-critical types, when SMS is on and the user's country prefers it."""
    if ReminderType(rtype) not in SMS_ELIGIBLE_TYPES:
        return ReminderChannel.EMAIL
    if not S.sms_enabled:
        return ReminderChannel.EMAIL
    country = ((get_profile(user_id) or {}).get("country_code") or "").upper()
    if country in SMS_PREFERRED_COUNTRIES:
        return ReminderChannel.SMS
    return ReminderChannel.EMAIL


# ---------------------------------------------------------------------------
# Core scheduling


def schedule_reminder(
    user_id: str,
    entity_type: str,
    entity_id: str,
    rtype: TypeLike,
    scheduled_for: int,
    channel: Optional[Union[ReminderChannel, str]] = None,
    *,
    locks: Optional[LockService] = None,
    only_if_missing: bool = False,
) -> bool:
    """Create or re-time a reminder. Returns True when a row was written.

    A ``sent`` row is left alone. A ``canceled`` row goes back to ``scheduled``.
    Lock contention means another caller is scheduling the same triple; this
    call becomes a no-op.
    """
    rtype = ReminderType(rtype)
    resolved = ReminderChannel(channel) if channel else get_best_channel(user_id, rtype)
    locks = locks or get_lock_service()
    rid = reminder_id(entity_type, entity_id, rtype)
    key = reminder_schedule_lock_key(entity_type, entity_id, rtype.value)

    with held_lock(locks, key, S.reminder_schedule_lock_ttl_ms) as token:
        if not token:
            LOCK_CONTENTION.labels(scope="reminder_schedule").inc()
            logger.info("Could not acquire %s, skipping", key)
            return False

        existing = get_reminder(rid)
        if existing and existing.get("status") == ReminderStatus.SENT.value:
            return False
        if existing and only_if_missing:
            return False

        ts = now_ts()
        if existing is None:
            item = {
                "reminder_id": rid,
                "entity_key": entity_key(entity_type, entity_id),
                "entity_type": entity_type,
                "entity_id": entity_id,
                "user_id": user_id,
                "type": rtype.value,
                "channel": resolved.value,
                "status": ReminderStatus.SCHEDULED.value,
                "scheduled_for": int(scheduled_for),
                "retry_count": 0,
                "created_at": ts,
                "updated_at": ts,
            }
            try:
                T.reminders.put_item(Item=item, ConditionExpression=Attr("reminder_id").not_exists())
            except Exception as exc:
                if is_conditional_failure(exc):
                    return False
                raise
            return True

        names = {"#f": "scheduled_for", "#u": "updated_at"}
        values: Dict[str, Any] = {":f": int(scheduled_for), ":t": ts}
        expr = "SET #f = :f, #u = :t"
        if existing.get("status") == ReminderStatus.CANCELED.value:
            names["#s"] = "status"
            values[":s"] = ReminderStatus.SCHEDULED.value
            expr += ", #s = :s"
        try:
            T.reminders.update_item(
                Key={"reminder_id": rid},
                UpdateExpression=expr,
                ConditionExpression=Attr("status").ne(ReminderStatus.SENT.value),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except Exception as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True


def _cancel_by_id(rid: str) -> bool:
    try:
        T.reminders.update_item(
            Key={"reminder_id": rid},
            UpdateExpression="SET #s = :c, #u = :t",
            ConditionExpression=Attr("status").eq(ReminderStatus.SCHEDULED.value),
            ExpressionAttributeNames={"#s": "status", "#u": "updated_at"},
            ExpressionAttributeValues={":c": ReminderStatus.CANCELED.value, ":t": now_ts()},
        )
        return True
    except Exception as exc:
        if is_conditional_failure(exc):
            return False
        raise


def cancel_reminder(entity_type: str, entity_id: str, rtype: TypeLike) -> bool:
    return _cancel_by_id(reminder_id(entity_type, entity_id, rtype))


def cancel_all_reminders_for_entity(entity_type: str, entity_id: str) -> int:
    rows = query_all(
        T.reminders,
        IndexName=S.reminders_entity_index,
        KeyConditionExpression=Key("entity_key").eq(entity_key(entity_type, entity_id)),
        FilterExpression=Attr("status").eq(ReminderStatus.SCHEDULED.value),
    )
    return sum(1 for it in list(rows) if _cancel_by_id(it["reminder_id"]))


# ---------------------------------------------------------------------------
# Subscriptions


def _load_subscription(sub: Union[str, Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    return get_subscription(sub) if isinstance(sub, str) else sub


def schedule_subscription_renewal_reminders(
    sub: Union[str, Mapping[str, Any]],
    *,
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    reschedule: bool = True,
) -> int:
    """7d/3d/1d notices before the next renewal. Only future times are scheduled."""
    s = _load_subscription(sub)
    if not s or not is_billable(s):
        return 0
    period_end = as_int(s.get("current_period_end"))
    if not period_end:
        return 0
    now = now or now_ts()
    eid = subscription_cycle_entity(s["subscription_id"], period_end)

    if reschedule:
        for rtype, _ in RENEWAL_OFFSETS:
            cancel_reminder(ENTITY_SUBSCRIPTION, eid, rtype)

    scheduled = 0
    for rtype, days in RENEWAL_OFFSETS:
        at = period_end - days * DAY_SECONDS
        if at <= now:
            continue
        if schedule_reminder(
            s["subscriber_id"], ENTITY_SUBSCRIPTION, eid, rtype, at,
            locks=locks, only_if_missing=not reschedule,
        ):
            scheduled += 1
    if scheduled:
        logger.info("Scheduled %d renewal reminders for subscription %s", scheduled, s["subscription_id"])
    return scheduled


def schedule_payment_failed_reminder(sub: Mapping[str, Any], *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    eid = subscription_cycle_entity(sub["subscription_id"], as_int(sub.get("current_period_end")))
    return schedule_reminder(
        sub["subscriber_id"], ENTITY_SUBSCRIPTION, eid, ReminderType.SUBSCRIPTION_PAYMENT_FAILED,
        now or now_ts(), locks=locks,
    )


def schedule_past_due_reminder(sub: Mapping[str, Any], *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    eid = subscription_cycle_entity(sub["subscription_id"], as_int(sub.get("current_period_end")))
    return schedule_reminder(
        sub["subscriber_id"], ENTITY_SUBSCRIPTION, eid, ReminderType.SUBSCRIPTION_PAST_DUE,
        now or now_ts(), locks=locks,
    )


def cancel_subscription_reminders(sub: Union[str, Mapping[str, Any]]) -> int:
    s = _load_subscription(sub)
    if not s:
        return 0
    count = cancel_all_reminders_for_entity(ENTITY_SUBSCRIPTION, s["subscription_id"])
    period_end = as_int(s.get("current_period_end"))
    if period_end:
        count += cancel_all_reminders_for_entity(
            ENTITY_SUBSCRIPTION, subscription_cycle_entity(s["subscription_id"], period_end)
        )
    return count


# ---------------------------------------------------------------------------
# Requests and invoices


def schedule_request_reminders(request_id: str, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> int:
    req = get_request(request_id)
    if not req:
        return 0
    if req.get("send_method") == "link":
        logger.info("Skipping reminders for request %s: shared as link", request_id)
        return 0
    if not (req.get("recipient_email") or req.get("recipient_phone")):
        return 0

    now = now or now_ts()
    user_id = req["creator_id"]
    plan = [
        (ReminderType.REQUEST_UNOPENED_24H, now + 24 * HOUR_SECONDS, False),
        (ReminderType.REQUEST_UNOPENED_72H, now + 72 * HOUR_SECONDS, False),
    ]
    expires = as_int(req.get("token_expires_at"))
    if expires:
        plan.append((ReminderType.REQUEST_EXPIRING, expires - DAY_SECONDS, True))
    due = as_int(req.get("due_date"))
    if due:
        plan.extend([
            (ReminderType.INVOICE_DUE_7D, due - 7 * DAY_SECONDS, True),
            (ReminderType.INVOICE_DUE_3D, due - 3 * DAY_SECONDS, True),
            (ReminderType.INVOICE_DUE_1D, due - DAY_SECONDS, True),
            (ReminderType.INVOICE_OVERDUE_1D, due + DAY_SECONDS, False),
            (ReminderType.INVOICE_OVERDUE_7D, due + 7 * DAY_SECONDS, False),
        ])

    scheduled = 0
    for rtype, at, future_only in plan:
        if future_only and at <= now:
            continue
        if schedule_reminder(user_id, ENTITY_REQUEST, request_id, rtype, at, locks=locks):
            scheduled += 1
    return scheduled


def schedule_request_unpaid_reminder(request_id: str, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    req = get_request(request_id)
    if not req or req.get("status") != "sent":
        return False
    now = now or now_ts()
    cancel_reminder(ENTITY_REQUEST, request_id, ReminderType.REQUEST_UNOPENED_24H)
    cancel_reminder(ENTITY_REQUEST, request_id, ReminderType.REQUEST_UNOPENED_72H)
    return schedule_reminder(
        req["creator_id"], ENTITY_REQUEST, request_id, ReminderType.REQUEST_UNPAID_3D,
        now + 3 * DAY_SECONDS, locks=locks,
    )


# ---------------------------------------------------------------------------
# Payouts and creator engagement


def schedule_payout_reminder(creator_id: str, payment_id: str, succeeded: bool, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    rtype = ReminderType.PAYOUT_COMPLETED if succeeded else ReminderType.PAYOUT_FAILED
    return schedule_reminder(creator_id, ENTITY_PAYOUT, payment_id, rtype, now or now_ts(), locks=locks)


def schedule_onboarding_reminders(user_id: str, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> int:
    now = now or now_ts()
    scheduled = 0
    for rtype, hours in ((ReminderType.ONBOARDING_INCOMPLETE_24H, 24), (ReminderType.ONBOARDING_INCOMPLETE_72H, 72)):
        if schedule_reminder(user_id, ENTITY_USER, user_id, rtype, now + hours * HOUR_SECONDS, ReminderChannel.EMAIL, locks=locks):
            scheduled += 1
    return scheduled


def schedule_bank_setup_reminder(user_id: str, scheduled_for: int, *, locks: Optional[LockService] = None) -> bool:
    return schedule_reminder(user_id, ENTITY_USER, user_id, ReminderType.BANK_SETUP_INCOMPLETE, scheduled_for, locks=locks)


def schedule_no_subscribers_reminder(user_id: str, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    return schedule_reminder(
        user_id, ENTITY_USER, user_id, ReminderType.NO_SUBSCRIBERS_7D,
        (now or now_ts()) + 7 * DAY_SECONDS, ReminderChannel.EMAIL, locks=locks,
    )


def schedule_payroll_ready_reminder(user_id: str, period_id: str, *, now: Optional[int] = None, locks: Optional[LockService] = None) -> bool:
    return schedule_reminder(
        user_id, ENTITY_PAYROLL, period_id, ReminderType.PAYROLL_READY,
        now or now_ts(), ReminderChannel.EMAIL, locks=locks,
    )


# ---------------------------------------------------------------------------
# Catch-up scan


def scan_and_schedule_missed_reminders(now: Optional[int] = None, locks: Optional[LockService] = None) -> int:
    """Create renewal notices that are missing for any active monthly subscription.

    Existing rows (whatever their status) are left as they are.
    """
    now = now or now_ts()
    locks = locks or get_lock_service()
    scheduled = 0
    for sub in iter_renewing_subscriptions(now):
        try:
            scheduled += schedule_subscription_renewal_reminders(sub, now=now, locks=locks, reschedule=False)
        except Exception:
            logger.exception("Missed-reminder scan failed for subscription %s", sub.get("subscription_id"))
    return scheduled


# ---------------------------------------------------------------------------
# Side effects

_SIDE_EFFECTS = ThreadPoolExecutor(max_workers=4, thread_name_prefix="side-effect")


def dispatch_side_effect(name: str, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> bool:
    """Run a secondary action synchronously with a time limit.

    Returns True on success. A failure or timeout is logged, counted and
    written as an activity record; it is never raised into the caller.
    """
    limit = timeout if timeout is not None else S.side_effect_timeout_seconds
    future = _SIDE_EFFECTS.submit(fn, *args, **kwargs)
    try:
        future.result(timeout=limit)
        return True
    except FuturesTimeout:
        error = f"timed out after {limit}s"
        logger.error("Side effect %s %s", name, error)
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        logger.exception("Side effect %s failed", name)

    SIDE_EFFECT_FAILURES.labels(name=name).inc()
    try:
        activity.write_activity(activity.OPS_USER, activity.ACTIVITY_SIDE_EFFECT_FAILED, {"name": name, "error": error})
    except Exception:
        logger.exception("Could not record failed side effect %s", name)
    return False
