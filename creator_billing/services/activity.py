from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from creator_billing.core.ddb import with_ttl
from creator_billing.core.settings import S
from creator_billing.core.tables import T
from creator_billing.core.time import DAY_SECONDS, now_ts

logger = logging.getLogger(__name__)

OPS_USER = "ops"

ACTIVITY_PAYMENT_RECEIVED = "payment_received"
ACTIVITY_PAYMENT_FAILED = "payment_failed"
ACTIVITY_SUBSCRIPTION_PAST_DUE = "subscription_past_due"
ACTIVITY_PAYOUT_INITIATED = "payout_initiated"
ACTIVITY_RECONCILIATION_REQUIRED = "reconciliation_required"
ACTIVITY_SIDE_EFFECT_FAILED = "side_effect_failed"


def _safe_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (payload or {}).items():
        if v is None:
            continue
        if isinstance(v, (int, bool)):
            out[k] = v
        else:
            out[k] = str(v)[:512]
    return out


def write_activity(user_id: str, activity_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    ts = now_ts()
    item = {
        "user_id": user_id,
        "activity_id": f"{ts:010d}#{uuid.uuid4().hex}",
        "ts": ts,
        "type": activity_type,
        "payload": _safe_payload(payload),
    }
    T.activity.put_item(Item=with_ttl(item, ttl_epoch=ts + int(S.activity_ttl_days) * DAY_SECONDS))
    return item


def _send_ops_email(subject: str, body_text: str) -> None:
    # Imported here: notify pulls in the SES/SNS/FCM clients.
    from creator_billing.services.notify import send_email

    send_email([S.alert_email], subject, body_text)


def raise_ops_alert(kind: str, title: str, details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Record an inconsistency that needs a human, and email ops if configured.

    Never raises: this runs on paths where the money has already moved and the
    caller must keep going. The record write is attempted first; if even that
    fails the full details go to the error log.
    """
    record = None
    try:
        record = write_activity(OPS_USER, kind, {"title": title, **details})
    except Exception:
        logger.exception("Could not persist ops alert %s: %s", kind, json.dumps(_safe_payload(details), sort_keys=True))

    if S.email_enabled and S.alert_email:
        try:
            lines = [f"Kind: {kind}", f"Title: {title}", ""]
            lines.append(json.dumps(_safe_payload(details), indent=2, sort_keys=True)[:4000])
            _send_ops_email(f"[Billing] {title}", "\n".join(lines))
        except Exception as exc:
            logger.warning("Ops alert email for %s not sent: %s", kind, exc)
    return record
