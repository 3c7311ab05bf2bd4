from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from creator_billing.core.errors import LockContention, UnknownPayout
from creator_billing.core.time import add_months_capped, cycle_month, to_ts
from creator_billing.routers import webhooks as routes
from creator_billing.services import billing, ledger
from creator_billing.services.billing import generate_charge_reference
from creator_billing.services.fees import compute_fee
from creator_billing.services.locks import subscription_billing_lock_key
from creator_billing.services.reminders import ENTITY_PAYOUT, ReminderType, reminder_id
from creator_billing.services.webhooks import handle_charge_success, handle_event, handle_transfer_event

NOW = to_ts(datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc))
PERIOD_END = NOW - 3600
SECRET = "sk_test_webhook"


def seed(fake_tables) -> None:
    fake_tables.subscriptions.seed({
        "subscription_id": "sub_1",
        "subscriber_id": "fan_1",
        "creator_id": "cr_1",
        "amount": 10000,
        "currency": "USD",
        "interval": "month",
        "status": "active",
        "current_period_end": PERIOD_END,
        "fee_model": "split_v1",
        "authorization_code": "AUTH_1",
    })
    fake_tables.profiles.seed({"user_id": "cr_1", "paystack_recipient_code": "RCP_1"})
    fake_tables.users.seed({"user_id": "fan_1", "email": "fan@example.com"})


def charge_event(reference: str, **metadata: Any) -> Dict[str, Any]:
    meta = {"subscription_id": "sub_1", "is_recurring": True}
    meta.update(metadata)
    return {
        "event": "charge.success",
        "data": {
            "id": 777,
            "reference": reference,
            "amount": 10400,
            "metadata": meta,
            "authorization": {"authorization_code": "AUTH_2"},
        },
    }


def stored_sub(fake_tables) -> Dict[str, Any]:
    return fake_tables.subscriptions.get_item(Key={"subscription_id": "sub_1"})["Item"]


def current_ref(attempt: int = 1) -> str:
    return generate_charge_reference("sub_1", cycle_month(PERIOD_END), attempt)


def test_charge_success_for_current_cycle_advances(fake_tables, locks, processor) -> None:
    seed(fake_tables)

    outcome = handle_charge_success(charge_event(current_ref(2)), now=NOW, locks=locks, processor=processor)

    assert outcome == "applied"
    sub = stored_sub(fake_tables)
    assert sub["current_period_end"] == add_months_capped(PERIOD_END, 1)
    assert sub["authorization_code"] == "AUTH_2"
    assert ledger.find_succeeded_by_reference(current_ref(2))["processor_transaction_id"] == "777"
    processor.initiate_transfer.assert_called_once()
    assert not locks.is_locked(subscription_billing_lock_key("sub_1"))


def test_charge_success_after_job_does_not_advance_twice(fake_tables, locks, processor) -> None:
    seed(fake_tables)
    billing.process_recurring_billing(now=NOW, locks=locks, processor=processor)
    advanced = stored_sub(fake_tables)["current_period_end"]
    assert processor.charge_authorization.call_count == 1
    assert advanced == add_months_capped(PERIOD_END, 1)

    outcome = handle_charge_success(charge_event(current_ref(1)), now=NOW + 5, locks=locks, processor=processor)

    assert outcome == "duplicate"
    assert stored_sub(fake_tables)["current_period_end"] == advanced
    assert len([r for r in fake_tables.payments.all() if r.get("status") == ledger.STATUS_SUCCEEDED and r.get("type") == ledger.TYPE_RECURRING]) == 1
    assert processor.initiate_transfer.call_count == 1


def test_non_recurring_and_unknown_events_ignored(fake_tables, locks, processor) -> None:
    seed(fake_tables)

    assert handle_charge_success(charge_event(current_ref(), is_recurring=False), now=NOW, locks=locks, processor=processor) == "ignored"
    assert handle_charge_success(charge_event(current_ref(), subscription_id="nope"), now=NOW, locks=locks, processor=processor) == "ignored"
    assert handle_event({"event": "subscription.create", "data": {}}) == "ignored"
    assert stored_sub(fake_tables)["current_period_end"] == PERIOD_END


def test_charge_success_while_billing_runs_raises(fake_tables, locks, processor) -> None:
    seed(fake_tables)
    locks.acquire(subscription_billing_lock_key("sub_1"), 60000)

    with patch("creator_billing.services.locks.time.sleep"):
        with pytest.raises(LockContention):
            handle_charge_success(charge_event(current_ref()), now=NOW, locks=locks, processor=processor)

    assert stored_sub(fake_tables)["current_period_end"] == PERIOD_END


def test_transfer_success_updates_payout_and_schedules_notice(fake_tables, locks) -> None:
    sub = {"subscription_id": "sub_1", "creator_id": "cr_1", "subscriber_id": "fan_1"}
    ledger.record_payout_pending(sub, compute_fee(10000, "USD"), reference="PAYOUT-r", charge_reference="r", now=NOW)
    event = {"event": "transfer.success", "data": {"reference": "PAYOUT-r"}}

    assert handle_transfer_event(event, now=NOW) == "applied"
    assert handle_transfer_event(event, now=NOW) == "duplicate"

    pid = ledger.payout_payment_id("PAYOUT-r")
    assert ledger.get_payment(pid)["status"] == ledger.STATUS_SUCCEEDED
    row = fake_tables.reminders.get_item(Key={"reminder_id": reminder_id(ENTITY_PAYOUT, pid, ReminderType.PAYOUT_COMPLETED)})["Item"]
    assert row["user_id"] == "cr_1"


def test_transfer_failed_records_reason(fake_tables, locks) -> None:
    sub = {"subscription_id": "sub_1", "creator_id": "cr_1", "subscriber_id": "fan_1"}
    ledger.record_payout_pending(sub, compute_fee(10000, "USD"), reference="PAYOUT-r", charge_reference="r", now=NOW)

    assert handle_event({"event": "transfer.failed", "data": {"reference": "PAYOUT-r", "reason": "Account closed"}}, now=NOW) == "applied"

    payout = ledger.get_payment(ledger.payout_payment_id("PAYOUT-r"))
    assert payout["status"] == ledger.STATUS_FAILED


def test_transfer_success_arriving_before_transfer_call_returns(fake_tables, locks, processor) -> None:
    seed(fake_tables)
    outcomes = []

    def transfer_settles_immediately(**kw: Any) -> Dict[str, Any]:
        outcomes.append(handle_transfer_event({"event": "transfer.success", "data": {"reference": kw["reference"]}}, now=NOW))
        return {"transfer_code": "TRF_fast", "reference": kw["reference"], "status": "success"}

    processor.initiate_transfer.side_effect = transfer_settles_immediately

    billing.process_recurring_billing(now=NOW, locks=locks, processor=processor)

    assert outcomes == ["applied"]
    pid = ledger.payout_payment_id(billing.payout_reference(current_ref(1)))
    payout = ledger.get_payment(pid)
    assert payout["status"] == ledger.STATUS_SUCCEEDED
    assert payout["transfer_code"] == "TRF_fast"
    assert fake_tables.reminders.get_item(Key={"reminder_id": reminder_id(ENTITY_PAYOUT, pid, ReminderType.PAYOUT_COMPLETED)}).get("Item")


def test_transfer_event_for_unrecorded_payout_asks_for_redelivery(fake_tables) -> None:
    with pytest.raises(UnknownPayout):
        handle_transfer_event({"event": "transfer.success", "data": {"reference": "PAYOUT-missing"}}, now=NOW)

    assert not fake_tables.payments.all()


def signed_request(payload: Any, signature: Optional[str] = None) -> Request:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    if signature is None:
        signature = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha512).hexdigest()
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/webhooks/paystack",
        "headers": [(b"content-type", b"application/json"), (b"x-paystack-signature", signature.encode())],
        "query_string": b"",
        "client": ("127.0.0.1", 1234),
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def test_route_rejects_bad_signature(settings) -> None:
    settings(paystack_secret_key=SECRET)

    with patch.object(routes, "handle_event") as handler:
        with pytest.raises(HTTPException) as err:
            asyncio.run(routes.paystack_webhook(signed_request({"event": "charge.success"}, signature="bad")))

    assert err.value.status_code == 401
    handler.assert_not_called()


def test_route_rejects_non_object_payload(settings) -> None:
    settings(paystack_secret_key=SECRET)

    with pytest.raises(HTTPException) as err:
        asyncio.run(routes.paystack_webhook(signed_request([1, 2])))

    assert err.value.status_code == 400


def test_route_acknowledges_handled_event(settings) -> None:
    settings(paystack_secret_key=SECRET)

    with patch.object(routes, "handle_event", return_value="applied") as handler:
        resp = asyncio.run(routes.paystack_webhook(signed_request({"event": "transfer.success", "data": {"reference": "x"}})))

    assert resp == {"ok": True}
    assert handler.call_args.args[0]["event"] == "transfer.success"


def test_route_asks_for_redelivery_on_lock_contention(settings) -> None:
    settings(paystack_secret_key=SECRET)

    with patch.object(routes, "handle_event", side_effect=LockContention("billing:sub_1")):
        with pytest.raises(HTTPException) as err:
            asyncio.run(routes.paystack_webhook(signed_request({"event": "charge.success"})))

    assert err.value.status_code == 409


def test_route_asks_for_redelivery_on_unknown_payout(settings) -> None:
    settings(paystack_secret_key=SECRET)

    with patch.object(routes, "handle_event", side_effect=UnknownPayout("PAYOUT-x")):
        with pytest.raises(HTTPException) as err:
            asyncio.run(routes.paystack_webhook(signed_request({"event": "transfer.success", "data": {"reference": "PAYOUT-x"}})))

    assert err.value.status_code == 404
