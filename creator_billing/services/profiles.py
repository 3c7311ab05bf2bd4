from __future__ import annotations

from typing import Any, Dict, Optional

from creator_billing.core.tables import T


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    return T.profiles.get_item(Key={"user_id": user_id}).get("Item")


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    return T.users.get_item(Key={"user_id": user_id}).get("Item")


def get_email(user_id: str) -> Optional[str]:
    u = get_user(user_id) or {}
    return u.get("email") or None


def display_name(profile: Optional[Dict[str, Any]], default: str = "a creator") -> str:
    return (profile or {}).get("display_name") or default


def notification_prefs(user_id: str) -> Dict[str, Any]:
    return (get_profile(user_id) or {}).get("notification_prefs") or {}


def has_bank_details(profile: Optional[Dict[str, Any]]) -> bool:
    p = profile or {}
    return bool(p.get("paystack_subaccount_code") or p.get("paystack_recipient_code"))


def get_request(request_id: str) -> Optional[Dict[str, Any]]:
    return T.requests.get_item(Key={"request_id": request_id}).get("Item")


def get_payroll_period(period_id: str) -> Optional[Dict[str, Any]]:
    return T.payroll.get_item(Key={"period_id": period_id}).get("Item")
