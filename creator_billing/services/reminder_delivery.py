"""Per-type reminder delivery.

Each handler re-reads the entity behind the reminder and returns False when
the reminder is no longer warranted (request paid or expired, subscription
cancelled or renewed, bank details added...). It returns True once the
message went out, and lets channel errors propagate so the processor can
schedule a retry.
"""
from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional

from creator_billing.core.ddb import as_int
from creator_billing.core.settings import S
from creator_billing.core.time import DAY_SECONDS, cycle_month, iso, now_ts
from creator_billing.services import ledger, notify
from creator_billing.services.fees import subscriber_charge_amount
from creator_billing.services.profiles import (
    display_name,
    get_email,
    get_payroll_period,
    get_profile,
    get_request,
    get_user,
    has_bank_details,
)
from creator_billing.services.reminders import ReminderChannel, ReminderType, parse_subscription_entity
from creator_billing.services.subscriptions import (
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    count_active_subscribers,
    get_subscription,
    is_billable,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], bool]


def format_money(cents: int, currency: str) -> str:
    return f"{(currency or '').upper()} {int(cents) / 100:,.2f}"


def _deliver(
    channel: str,
    *,
    user_id: str = "",
    email: Optional[str] = None,
    phone: Optional[str] = None,
    subject: str,
    body: str,
    sms_text: Optional[str] = None,
) -> bool:
    if channel == ReminderChannel.SMS.value and phone:
        notify.send_sms(phone, sms_text or body)
        return True
    if channel == ReminderChannel.PUSH.value and user_id:
        notify.send_push(user_id, subject, sms_text or body)
        return True
    if email:
        notify.send_email([email], subject, body)
        return True
    return False


# ---------------------------------------------------------------------------
# Requests and invoices


def _valid_request(request_id: str) -> Optional[Dict[str, Any]]:
    req = get_request(request_id)
    if not req or req.get("status") != "sent":
        return None
    expires = as_int(req.get("token_expires_at"))
    if expires and expires < now_ts():
        return None
    if not req.get("public_token"):
        logger.warning("Request %s has no public token; reminder dropped", request_id)
        return None
    return req


def _request_link(req: Mapping[str, Any]) -> str:
    return f"{S.public_page_url}/r/{req['public_token']}"


def _creator_name(req: Mapping[str, Any]) -> str:
    return display_name(get_profile(req.get("creator_id", "")))


def _send_request_message(req: Mapping[str, Any], channel: str, subject: str, lead: str) -> bool:
    link = _request_link(req)
    amount = format_money(as_int(req.get("amount_cents")), req.get("currency", ""))
    body = f"{lead}\n\nAmount: {amount}\n\n{link}"
    return _deliver(
        channel,
        email=req.get("recipient_email"),
        phone=req.get("recipient_phone"),
        subject=subject,
        body=body,
        sms_text=f"{lead} {amount}: {link}",
    )


def deliver_request_unopened(reminder: Mapping[str, Any], final: bool) -> bool:
    req = _valid_request(reminder["entity_id"])
    if not req:
        return False
    who = _creator_name(req)
    lead = f"Final reminder: {who} is waiting on your payment request." if final else f"{who} sent you a payment request."
    return _send_request_message(req, reminder.get("channel", "email"), f"Payment request from {who}", lead)


def deliver_request_unpaid(reminder: Mapping[str, Any]) -> bool:
    req = _valid_request(reminder["entity_id"])
    if not req:
        return False
    who = _creator_name(req)
    return _send_request_message(req, reminder.get("channel", "email"), f"Your request from {who} is still open", f"You viewed {who}'s request but haven't paid yet.")


def deliver_request_expiring(reminder: Mapping[str, Any]) -> bool:
    req = _valid_request(reminder["entity_id"])
    if not req:
        return False
    who = _creator_name(req)
    return _send_request_message(req, reminder.get("channel", "email"), f"Request from {who} expires soon", f"{who}'s payment request expires in 24 hours.")


def deliver_invoice_due(reminder: Mapping[str, Any], days: int) -> bool:
    req = _valid_request(reminder["entity_id"])
    if not req or not req.get("due_date"):
        return False
    who = _creator_name(req)
    when = "tomorrow" if days == 1 else f"in {days} days"
    return _send_request_message(req, reminder.get("channel", "email"), f"Invoice from {who} due {when}", f"Your invoice from {who} is due {when}.")


def deliver_invoice_overdue(reminder: Mapping[str, Any], days: int) -> bool:
    req = _valid_request(reminder["entity_id"])
    if not req or not req.get("due_date"):
        return False
    who = _creator_name(req)
    return _send_request_message(req, reminder.get("channel", "email"), f"Invoice from {who} is overdue", f"Your invoice from {who} is {days} day{'s' if days > 1 else ''} overdue.")


# ---------------------------------------------------------------------------
# Payouts


def _deliver_payout(reminder: Mapping[str, Any], expected_status: str) -> bool:
    payment = ledger.get_payment(reminder["entity_id"])
    if not payment or payment.get("type") != ledger.TYPE_PAYOUT or payment.get("status") != expected_status:
        return False
    creator_id = payment.get("creator_id", "")
    user = get_user(creator_id)
    profile = get_profile(creator_id)
    if not user or not profile:
        return False
    amount = format_money(as_int(payment.get("amount_cents", payment.get("net_cents"))), payment.get("currency", ""))
    if expected_status == ledger.STATUS_SUCCEEDED:
        subject = "Your payout is on its way"
        body = f"Hi {display_name(profile, 'there')},\n\nA payout of {amount} has been sent to your bank account."
    else:
        subject = "Your payout could not be completed"
        body = f"Hi {display_name(profile, 'there')},\n\nA payout of {amount} failed. Please check your bank details."
    return _deliver(
        reminder.get("channel", "email"),
        user_id=creator_id,
        email=user.get("email"),
        phone=profile.get("phone"),
        subject=subject,
        body=body,
        sms_text=f"{subject}: {amount}",
    )


def deliver_payout_completed(reminder: Mapping[str, Any]) -> bool:
    return _deliver_payout(reminder, ledger.STATUS_SUCCEEDED)


def deliver_payout_failed(reminder: Mapping[str, Any]) -> bool:
    return _deliver_payout(reminder, ledger.STATUS_FAILED)


# ---------------------------------------------------------------------------
# Creator engagement


def deliver_payroll_ready(reminder: Mapping[str, Any]) -> bool:
    period = get_payroll_period(reminder["entity_id"])
    if not period:
        return False
    user_id = period.get("user_id", reminder.get("user_id", ""))
    profile = get_profile(user_id)
    email = get_email(user_id)
    if not profile or not email:
        return False
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=email,
        subject="Your pay statement is ready",
        body=f"Hi {display_name(profile, 'there')},\n\nYour statement for {period.get('label', 'this period')} is ready.",
    )


def deliver_onboarding_incomplete(reminder: Mapping[str, Any], final: bool) -> bool:
    user_id = reminder["entity_id"]
    user = get_user(user_id)
    # A profile exists once onboarding is finished
    if not user or get_profile(user_id):
        return False
    subject = "Last step to start getting paid" if final else "Finish setting up your page"
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=user.get("email"),
        subject=subject,
        body=f"You're almost there. Finish setting up at {S.public_page_url}/onboarding",
    )


def deliver_bank_setup_incomplete(reminder: Mapping[str, Any]) -> bool:
    user_id = reminder["entity_id"]
    user = get_user(user_id)
    profile = get_profile(user_id)
    if not user or not profile or has_bank_details(profile):
        return False
    pending = as_int(profile.get("pending_balance_cents"))
    if pending <= 0:
        return False
    amount = format_money(pending, profile.get("currency", ""))
    return _deliver(
        reminder.get("channel", "email"),
        user_id=user_id,
        email=user.get("email"),
        phone=profile.get("phone"),
        subject="Add your bank details to get paid",
        body=f"You have {amount} waiting. Add your bank details at {S.public_page_url}/settings/payouts",
        sms_text=f"You have {amount} waiting. Add bank details to get paid.",
    )


def deliver_no_subscribers(reminder: Mapping[str, Any]) -> bool:
    user_id = reminder["entity_id"]
    user = get_user(user_id)
    profile = get_profile(user_id)
    if not user or not profile:
        return False
    if count_active_subscribers(user_id) > 0:
        return False
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=user.get("email"),
        subject="Share your page to get your first subscriber",
        body=f"Your page is live but has no subscribers yet. Share {S.public_page_url}/{profile.get('username', '')}",
    )


# ---------------------------------------------------------------------------
# Subscriptions


def _current_cycle_subscription(reminder: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    sub_id, cycle = parse_subscription_entity(reminder["entity_id"])
    sub = get_subscription(sub_id)
    if not sub:
        return None
    if cycle and cycle != cycle_month(as_int(sub.get("current_period_end"))):
        # the cycle this reminder was about has been paid or replaced
        return None
    return sub


def _manage_url(sub: Mapping[str, Any]) -> str:
    return f"{S.public_page_url}/subscriptions/{sub['subscription_id']}/manage"


def _subscriber_email(sub: Mapping[str, Any]) -> Optional[str]:
    return sub.get("subscriber_email") or get_email(sub.get("subscriber_id", ""))


def deliver_subscription_renewal(reminder: Mapping[str, Any], days: int) -> bool:
    sub = _current_cycle_subscription(reminder)
    if not sub or not is_billable(sub):
        return False
    provider = display_name(get_profile(sub.get("creator_id", "")))
    amount = format_money(subscriber_charge_amount(sub), sub.get("currency", ""))
    renewal = iso(as_int(sub.get("current_period_end")))[:10]
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=_subscriber_email(sub),
        subject=f"Your subscription to {provider} renews in {days} day{'s' if days > 1 else ''}",
        body=(
            f"Your subscription to {provider} renews on {renewal} for {amount}.\n\n"
            f"Manage or cancel: {_manage_url(sub)}"
        ),
    )


def deliver_subscription_payment_failed(reminder: Mapping[str, Any]) -> bool:
    sub = _current_cycle_subscription(reminder)
    if not sub or sub.get("status") not in (STATUS_ACTIVE, STATUS_PAST_DUE):
        return False
    provider = display_name(get_profile(sub.get("creator_id", "")))
    amount = format_money(subscriber_charge_amount(sub), sub.get("currency", ""))
    retry = ""
    if sub.get("status") == STATUS_ACTIVE:
        retry = f"\nWe'll try again around {iso(now_ts() + DAY_SECONDS)[:10]}."
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=_subscriber_email(sub),
        subject=f"Payment to {provider} failed",
        body=f"We couldn't charge {amount} for your subscription to {provider}.{retry}\n\nUpdate your card: {_manage_url(sub)}",
    )


def deliver_subscription_past_due(reminder: Mapping[str, Any]) -> bool:
    sub = _current_cycle_subscription(reminder)
    if not sub or sub.get("status") != STATUS_PAST_DUE:
        return False
    provider = display_name(get_profile(sub.get("creator_id", "")))
    amount = format_money(subscriber_charge_amount(sub), sub.get("currency", ""))
    return _deliver(
        ReminderChannel.EMAIL.value,
        email=_subscriber_email(sub),
        subject=f"Your subscription to {provider} is past due",
        body=f"We couldn't collect {amount} after several attempts.\n\nUpdate your payment method: {_manage_url(sub)}",
    )


DELIVERY_HANDLERS: Dict[ReminderType, Handler] = {
    ReminderType.REQUEST_UNOPENED_24H: partial(deliver_request_unopened, final=False),
    ReminderType.REQUEST_UNOPENED_72H: partial(deliver_request_unopened, final=True),
    ReminderType.REQUEST_UNPAID_3D: deliver_request_unpaid,
    ReminderType.REQUEST_EXPIRING: deliver_request_expiring,
    ReminderType.INVOICE_DUE_7D: partial(deliver_invoice_due, days=7),
    ReminderType.INVOICE_DUE_3D: partial(deliver_invoice_due, days=3),
    ReminderType.INVOICE_DUE_1D: partial(deliver_invoice_due, days=1),
    ReminderType.INVOICE_OVERDUE_1D: partial(deliver_invoice_overdue, days=1),
    ReminderType.INVOICE_OVERDUE_7D: partial(deliver_invoice_overdue, days=7),
    ReminderType.PAYOUT_COMPLETED: deliver_payout_completed,
    ReminderType.PAYOUT_FAILED: deliver_payout_failed,
    ReminderType.PAYROLL_READY: deliver_payroll_ready,
    ReminderType.ONBOARDING_INCOMPLETE_24H: partial(deliver_onboarding_incomplete, final=False),
    ReminderType.ONBOARDING_INCOMPLETE_72H: partial(deliver_onboarding_incomplete, final=True),
    ReminderType.BANK_SETUP_INCOMPLETE: deliver_bank_setup_incomplete,
    ReminderType.NO_SUBSCRIBERS_7D: deliver_no_subscribers,
    ReminderType.SUBSCRIPTION_RENEWAL_7D: partial(deliver_subscription_renewal, days=7),
    ReminderType.SUBSCRIPTION_RENEWAL_3D: partial(deliver_subscription_renewal, days=3),
    ReminderType.SUBSCRIPTION_RENEWAL_1D: partial(deliver_subscription_renewal, days=1),
    ReminderType.SUBSCRIPTION_PAYMENT_FAILED: deliver_subscription_payment_failed,
    ReminderType.SUBSCRIPTION_PAST_DUE: deliver_subscription_past_due,
}


def _check_exhaustive() -> None:
    missing = set(ReminderType) - set(DELIVERY_HANDLERS)
    if missing:
        raise RuntimeError(f"No delivery handler for: {sorted(t.value for t in missing)}")


_check_exhaustive()
