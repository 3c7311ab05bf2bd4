from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List
from unittest.mock import Mock, patch

from creator_billing.core.errors import NotificationError
from creator_billing.core.time import DAY_SECONDS, add_months_capped, to_ts
from creator_billing.services import reminder_delivery, reminder_processor
from creator_billing.services.locks import reminder_delivery_lock_key
from creator_billing.services.reminder_processor import process_due_reminders, should_send
from creator_billing.services.reminders import ENTITY_SUBSCRIPTION, ReminderType, reminder_id, subscription_cycle_entity

NOW = to_ts(datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc))


def reminder(rtype: ReminderType, entity_id: str, scheduled_for: int, **extra: Any) -> Dict[str, Any]:
    row = {
        "reminder_id": reminder_id("request", entity_id, rtype),
        "entity_type": "request",
        "entity_id": entity_id,
        "entity_key": f"request#{entity_id}",
        "user_id": "u1",
        "type": rtype.value,
        "channel": "email",
        "status": "scheduled",
        "scheduled_for": scheduled_for,
        "retry_count": 0,
    }
    row.update(extra)
    return row


def stored(fake_tables, rid: str) -> Dict[str, Any]:
    return fake_tables.reminders.get_item(Key={"reminder_id": rid})["Item"]


def test_due_reminders_processed_earliest_first(fake_tables, locks) -> None:
    fake_tables.reminders.seed(
        reminder(ReminderType.REQUEST_EXPIRING, "b", NOW - 10),
        reminder(ReminderType.REQUEST_EXPIRING, "a", NOW - 30),
        reminder(ReminderType.REQUEST_EXPIRING, "c", NOW - 20),
        reminder(ReminderType.REQUEST_EXPIRING, "future", NOW + 100),
    )
    seen: List[str] = []
    handler = Mock(side_effect=lambda r: seen.append(r["entity_id"]) or True)

    with patch.dict(reminder_processor.DELIVERY_HANDLERS, {ReminderType.REQUEST_EXPIRING: handler}):
        result = process_due_reminders(now=NOW, locks=locks, batch_size=2)

    assert seen == ["a", "c"]
    assert (result.processed, result.sent) == (2, 2)
    row = stored(fake_tables, reminder_id("request", "a", ReminderType.REQUEST_EXPIRING))
    assert row["status"] == "sent"
    assert row["sent_at"] == NOW
    assert stored(fake_tables, reminder_id("request", "b", ReminderType.REQUEST_EXPIRING))["status"] == "scheduled"


def test_handler_declining_cancels(fake_tables, locks) -> None:
    row = reminder(ReminderType.REQUEST_UNPAID_3D, "a", NOW - 1)
    fake_tables.reminders.seed(row)

    with patch.dict(reminder_processor.DELIVERY_HANDLERS, {ReminderType.REQUEST_UNPAID_3D: Mock(return_value=False)}):
        result = process_due_reminders(now=NOW, locks=locks)

    assert result.canceled == 1
    assert stored(fake_tables, row["reminder_id"])["status"] == "canceled"


def test_failed_delivery_retried_then_failed(fake_tables, locks) -> None:
    first = reminder(ReminderType.INVOICE_DUE_1D, "a", NOW - 1)
    last = reminder(ReminderType.INVOICE_DUE_1D, "b", NOW - 1, retry_count=2)
    fake_tables.reminders.seed(first, last)
    handler = Mock(side_effect=NotificationError("SES send failed"))

    with patch.dict(reminder_processor.DELIVERY_HANDLERS, {ReminderType.INVOICE_DUE_1D: handler}):
        result = process_due_reminders(now=NOW, locks=locks)

    assert result.failed == 2
    assert {e["error"] for e in result.errors} == {"SES send failed"}

    retried = stored(fake_tables, first["reminder_id"])
    assert retried["status"] == "scheduled"
    assert retried["retry_count"] == 1
    assert retried["scheduled_for"] == NOW + 3600
    assert retried["error_message"] == "SES send failed"

    gave_up = stored(fake_tables, last["reminder_id"])
    assert gave_up["status"] == "failed"
    assert gave_up["retry_count"] == 3


def test_opted_out_recipient_is_canceled_silently(fake_tables, locks) -> None:
    fake_tables.profiles.seed({"user_id": "u1", "notification_prefs": {"paymentAlerts": False}})
    row = reminder(ReminderType.INVOICE_DUE_3D, "a", NOW - 1)
    fake_tables.reminders.seed(row)
    handler = Mock(return_value=True)

    with patch.dict(reminder_processor.DELIVERY_HANDLERS, {ReminderType.INVOICE_DUE_3D: handler}):
        result = process_due_reminders(now=NOW, locks=locks)

    handler.assert_not_called()
    assert (result.canceled, result.failed, result.errors) == (1, 0, [])
    assert stored(fake_tables, row["reminder_id"])["cancel_reason"] == "opted_out"


def test_locked_reminder_is_skipped(fake_tables, locks) -> None:
    row = reminder(ReminderType.REQUEST_EXPIRING, "a", NOW - 1)
    fake_tables.reminders.seed(row)
    locks.acquire(reminder_delivery_lock_key(row["reminder_id"]), 60000)
    handler = Mock(return_value=True)

    with patch.dict(reminder_processor.DELIVERY_HANDLERS, {ReminderType.REQUEST_EXPIRING: handler}):
        result = process_due_reminders(now=NOW, locks=locks)

    assert (result.processed, result.skipped) == (0, 1)
    handler.assert_not_called()


def test_preferences(fake_tables) -> None:
    fake_tables.profiles.seed({"user_id": "u1", "notification_prefs": {"email": False, "subscriberAlerts": True}})
    fake_tables.profiles.seed({"user_id": "u2", "notification_prefs": {"subscriberAlerts": False}})

    assert not should_send("u1", ReminderType.INVOICE_DUE_1D, "email")
    assert should_send("u1", ReminderType.INVOICE_DUE_1D, "sms")
    assert should_send("u1", ReminderType.SUBSCRIPTION_RENEWAL_7D, "email")
    assert not should_send("u2", ReminderType.REQUEST_UNOPENED_24H, "email")
    assert should_send("u2", ReminderType.PAYOUT_COMPLETED, "email")
    assert should_send("nobody", ReminderType.REQUEST_UNOPENED_24H, "email")


def seed_subscription(fake_tables, period_end: int) -> Dict[str, Any]:
    sub = {
        "subscription_id": "sub_1",
        "subscriber_id": "fan_1",
        "creator_id": "cr_1",
        "amount": 10000,
        "currency": "USD",
        "interval": "month",
        "status": "active",
        "current_period_end": period_end,
        "fee_model": "split_v1",
    }
    fake_tables.subscriptions.seed(sub)
    fake_tables.profiles.seed({"user_id": "cr_1", "display_name": "Ada"})
    fake_tables.users.seed({"user_id": "fan_1", "email": "fan@example.com"})
    return sub


def renewal_row(period_end: int) -> Dict[str, Any]:
    eid = subscription_cycle_entity("sub_1", period_end)
    return {
        "reminder_id": reminder_id(ENTITY_SUBSCRIPTION, eid, ReminderType.SUBSCRIPTION_RENEWAL_3D),
        "entity_type": ENTITY_SUBSCRIPTION,
        "entity_id": eid,
        "user_id": "fan_1",
        "type": ReminderType.SUBSCRIPTION_RENEWAL_3D.value,
        "channel": "email",
        "status": "scheduled",
        "scheduled_for": NOW - 5,
        "retry_count": 0,
    }


def test_renewal_notice_sent_with_subscriber_amount(fake_tables, locks) -> None:
    period_end = NOW + 3 * DAY_SECONDS
    seed_subscription(fake_tables, period_end)
    row = renewal_row(period_end)
    fake_tables.reminders.seed(row)

    with patch.object(reminder_delivery.notify, "send_email") as send_email:
        result = process_due_reminders(now=NOW, locks=locks)

    assert result.sent == 1
    to, subject, body = send_email.call_args.args
    assert to == ["fan@example.com"]
    assert "Ada" in subject and "3 days" in subject
    assert "USD 104.00" in body
    assert "/subscriptions/sub_1/manage" in body


def test_renewal_notice_for_paid_cycle_is_canceled(fake_tables, locks) -> None:
    period_end = NOW + 3 * DAY_SECONDS
    seed_subscription(fake_tables, add_months_capped(period_end, 1))
    row = renewal_row(period_end)
    fake_tables.reminders.seed(row)

    with patch.object(reminder_delivery.notify, "send_email") as send_email:
        result = process_due_reminders(now=NOW, locks=locks)

    send_email.assert_not_called()
    assert result.canceled == 1


def test_paid_request_reminder_is_canceled(fake_tables, locks) -> None:
    fake_tables.requests.seed({"request_id": "a", "creator_id": "cr_1", "status": "paid", "public_token": "tok"})
    fake_tables.reminders.seed(reminder(ReminderType.REQUEST_UNOPENED_24H, "a", NOW - 1))

    with patch.object(reminder_delivery.notify, "send_email") as send_email:
        result = process_due_reminders(now=NOW, locks=locks)

    send_email.assert_not_called()
    assert result.canceled == 1


def test_open_request_reminder_sent_by_sms(fake_tables, locks) -> None:
    fake_tables.requests.seed({
        "request_id": "a",
        "creator_id": "cr_1",
        "status": "sent",
        "public_token": "tok",
        "recipient_phone": "+2348000000000",
        "amount_cents": 5000,
        "currency": "NGN",
        "due_date": NOW + DAY_SECONDS,
    })
    fake_tables.reminders.seed(reminder(ReminderType.INVOICE_DUE_1D, "a", NOW - 1, channel="sms"))

    with patch.object(reminder_delivery.notify, "send_sms") as send_sms:
        result = process_due_reminders(now=NOW, locks=locks)

    assert result.sent == 1
    number, text = send_sms.call_args.args
    assert number == "+2348000000000"
    assert "NGN 50.00" in text and "/r/tok" in text


def test_every_reminder_type_has_handler() -> None:
    assert set(reminder_delivery.DELIVERY_HANDLERS) == set(ReminderType)
    assert set(reminder_processor.PREFERENCE_BUCKETS) == set(ReminderType)
