from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from boto3.dynamodb.conditions import Attr, Key

from creator_billing.core.ddb import as_int, query_page
from creator_billing.core.errors import PreferenceOptOut
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import now_ts
from creator_billing.metrics import LOCK_CONTENTION, record_reminder
from creator_billing.services.locks import LockService, get_lock_service, held_lock, reminder_delivery_lock_key
from creator_billing.services.profiles import notification_prefs
from creator_billing.services.reminder_delivery import DELIVERY_HANDLERS
from creator_billing.services.reminders import ReminderStatus, ReminderType, get_reminder

logger = logging.getLogger(__name__)


class PreferenceBucket(str, Enum):
    ALWAYS = "always"
    PAYMENT_ALERTS = "payment_alerts"
    SUBSCRIBER_ALERTS = "subscriber_alerts"


# Renewal, payment-failed and past-due notices are required before and after
# billing a card, so they ignore opt-outs like the platform notices do.
PREFERENCE_BUCKETS: Dict[ReminderType, PreferenceBucket] = {
    ReminderType.INVOICE_DUE_7D: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.INVOICE_DUE_3D: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.INVOICE_DUE_1D: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.INVOICE_OVERDUE_1D: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.INVOICE_OVERDUE_7D: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.PAYOUT_COMPLETED: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.PAYOUT_FAILED: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.REQUEST_EXPIRING: PreferenceBucket.PAYMENT_ALERTS,
    ReminderType.REQUEST_UNOPENED_24H: PreferenceBucket.SUBSCRIBER_ALERTS,
    ReminderType.REQUEST_UNOPENED_72H: PreferenceBucket.SUBSCRIBER_ALERTS,
    ReminderType.REQUEST_UNPAID_3D: PreferenceBucket.SUBSCRIBER_ALERTS,
    ReminderType.ONBOARDING_INCOMPLETE_24H: PreferenceBucket.ALWAYS,
    ReminderType.ONBOARDING_INCOMPLETE_72H: PreferenceBucket.ALWAYS,
    ReminderType.BANK_SETUP_INCOMPLETE: PreferenceBucket.ALWAYS,
    ReminderType.NO_SUBSCRIBERS_7D: PreferenceBucket.ALWAYS,
    ReminderType.PAYROLL_READY: PreferenceBucket.ALWAYS,
    ReminderType.SUBSCRIPTION_RENEWAL_7D: PreferenceBucket.ALWAYS,
    ReminderType.SUBSCRIPTION_RENEWAL_3D: PreferenceBucket.ALWAYS,
    ReminderType.SUBSCRIPTION_RENEWAL_1D: PreferenceBucket.ALWAYS,
    ReminderType.SUBSCRIPTION_PAYMENT_FAILED: PreferenceBucket.ALWAYS,
    ReminderType.SUBSCRIPTION_PAST_DUE: PreferenceBucket.ALWAYS,
}

_CATEGORY_PREFS = {
    PreferenceBucket.PAYMENT_ALERTS: "paymentAlerts",
    PreferenceBucket.SUBSCRIBER_ALERTS: "subscriberAlerts",
}

if set(PREFERENCE_BUCKETS) != set(ReminderType):
    raise RuntimeError("Every reminder type needs a preference bucket")


@dataclass
class ReminderResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    canceled: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "canceled": self.canceled,
            "errors": list(self.errors),
        }


def should_send(user_id: str, rtype: ReminderType, channel: str) -> bool:
    bucket = PREFERENCE_BUCKETS[rtype]
    if bucket == PreferenceBucket.ALWAYS:
        return True
    prefs = notification_prefs(user_id)
    # Only an explicit False opts out; missing keys mean opted in.
    if prefs.get(channel) is False:
        return False
    if prefs.get(_CATEGORY_PREFS[bucket]) is False:
        return False
    return True


def fetch_due_reminders(now: int, limit: int) -> List[Dict[str, Any]]:
    """Earliest-due first."""
    items, _ = query_page(
        T.reminders,
        IndexName=S.reminders_due_index,
        KeyConditionExpression=Key("status").eq(ReminderStatus.SCHEDULED.value) & Key("scheduled_for").lte(int(now)),
        ScanIndexForward=True,
        Limit=int(limit),
    )
    return items


def _transition(rid: str, expr: str, names: Dict[str, str], values: Dict[str, Any]) -> None:
    names = {"#s": "status", "#u": "updated_at", **names}
    T.reminders.update_item(
        Key={"reminder_id": rid},
        UpdateExpression="SET #u = :now, " + expr,
        ConditionExpression=Attr("status").eq(ReminderStatus.SCHEDULED.value),
        ExpressionAttributeNames=names,
        ExpressionAttributeValues=values,
    )


def _mark_sent(rid: str, now: int) -> None:
    _transition(rid, "#s = :s, #a = :now", {"#a": "sent_at"}, {":s": ReminderStatus.SENT.value, ":now": now})


def _mark_canceled(rid: str, now: int, reason: str) -> None:
    _transition(rid, "#s = :s, #r = :r", {"#r": "cancel_reason"}, {":s": ReminderStatus.CANCELED.value, ":r": reason, ":now": now})


def _mark_retry(reminder: Mapping[str, Any], now: int, error: str) -> ReminderStatus:
    previous = as_int(reminder.get("retry_count"))
    status = ReminderStatus.FAILED if previous >= S.reminder_max_retries else ReminderStatus.SCHEDULED
    _transition(
        reminder["reminder_id"],
        "#s = :s, #c = :c, #f = :f, #e = :e",
        {"#c": "retry_count", "#f": "scheduled_for", "#e": "error_message"},
        {
            ":s": status.value,
            ":c": previous + 1,
            ":f": now + S.reminder_retry_delay_seconds,
            ":e": error[:500],
            ":now": now,
        },
    )
    return status


def _deliver(reminder: Mapping[str, Any], rtype: ReminderType) -> bool:
    channel = reminder.get("channel", "email")
    if not should_send(reminder.get("user_id", ""), rtype, channel):
        raise PreferenceOptOut(f"{rtype.value} via {channel}")
    return DELIVERY_HANDLERS[rtype](reminder)


def _process_one(reminder: Mapping[str, Any], now: int, result: ReminderResult) -> None:
    rid = reminder["reminder_id"]
    current = get_reminder(rid)
    if not current or current.get("status") != ReminderStatus.SCHEDULED.value:
        logger.info("Reminder %s already handled, skipping", rid)
        result.skipped += 1
        return

    try:
        rtype = ReminderType(current.get("type"))
    except ValueError:
        logger.warning("Reminder %s has unknown type %r", rid, current.get("type"))
        _mark_canceled(rid, now, "unknown_type")
        result.canceled += 1
        return

    try:
        sent = _deliver(current, rtype)
    except PreferenceOptOut:
        logger.info("Reminder %s skipped: user %s opted out", rid, current.get("user_id"))
        _mark_canceled(rid, now, "opted_out")
        result.canceled += 1
        record_reminder(rtype.value, "opted_out")
        return
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        status = _mark_retry(current, now, error)
        result.failed += 1
        result.errors.append({"reminderId": rid, "error": error})
        record_reminder(rtype.value, "failed" if status == ReminderStatus.FAILED else "retry")
        logger.warning("Reminder %s failed (%s): %s", rid, status.value, error)
        return

    if sent:
        _mark_sent(rid, now)
        result.sent += 1
        record_reminder(rtype.value, "sent")
    else:
        _mark_canceled(rid, now, "not_warranted")
        result.canceled += 1
        record_reminder(rtype.value, "canceled")


def process_due_reminders(
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    batch_size: Optional[int] = None,
) -> ReminderResult:
    now = now or now_ts()
    locks = locks or get_lock_service()
    result = ReminderResult()

    due = fetch_due_reminders(now, batch_size or S.reminder_batch_size)
    logger.info("Found %d due reminders", len(due))

    for reminder in due:
        rid = reminder["reminder_id"]
        with held_lock(locks, reminder_delivery_lock_key(rid), S.reminder_delivery_lock_ttl_ms) as token:
            if not token:
                LOCK_CONTENTION.labels(scope="reminder_delivery").inc()
                logger.info("Reminder %s locked by another worker, skipping", rid)
                result.skipped += 1
                continue
            result.processed += 1
            try:
                _process_one(reminder, now, result)
            except Exception as exc:
                logger.exception("Reminder %s could not be processed", rid)
                result.errors.append({"reminderId": rid, "error": str(exc) or type(exc).__name__})

    logger.info("Reminders processed: %d sent, %d failed, %d canceled", result.sent, result.failed, result.canceled)
    return result
