from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from boto3.dynamodb.conditions import Key
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from creator_billing.core import aws
from creator_billing.core.errors import NotificationError
from creator_billing.core.logs import mask_phone
from creator_billing.core.settings import S
from creator_billing.core.tables import T

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_FCM_TOKEN_CACHE: Dict[str, Any] = {}


def send_email(to_emails: List[str], subject: str, body_text: str) -> None:
    recipients = [e for e in to_emails if e]
    if not recipients:
        raise NotificationError("No email recipient")
    if not S.email_enabled or not S.email_from:
        raise NotificationError("Email delivery is not configured")
    try:
        aws.ses_client().send_email(
            Source=S.email_from,
            Destination={"ToAddresses": recipients},
            Message={"Subject": {"Data": subject[:120]}, "Body": {"Text": {"Data": body_text[:8000]}}},
        )
    except Exception as exc:
        raise NotificationError(f"SES send failed: {exc}") from exc


def send_sms(to_number: str, body_text: str) -> None:
    if not to_number:
        raise NotificationError("No SMS recipient")
    if not S.sms_enabled:
        raise NotificationError("SMS delivery is disabled")
    try:
        if aws.twilio is not None and S.twilio_from_number:
            aws.twilio.messages.create(to=to_number, from_=S.twilio_from_number, body=body_text[:1400])
        else:
            aws.sns_client().publish(PhoneNumber=to_number, Message=body_text[:1400])
    except Exception as exc:
        raise NotificationError(f"SMS send to {mask_phone(to_number)} failed: {exc}") from exc


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def fcm_access_token() -> str:
    cached = _FCM_TOKEN_CACHE.get("token")
    if cached and _FCM_TOKEN_CACHE.get("exp", 0) > time.time() + 60:
        return cached
    if not (S.fcm_project_id and S.fcm_client_email and S.fcm_private_key):
        raise NotificationError("FCM is not configured")

    key_pem = S.fcm_private_key.replace("\\n", "\n").encode("utf-8")
    key = serialization.load_pem_private_key(key_pem, password=None)
    now = int(time.time())
    header = {"alg": "RS256", "typ": "JWT"}
    claims = {"iss": S.fcm_client_email, "scope": FCM_SCOPE, "aud": GOOGLE_TOKEN_URL, "iat": now, "exp": now + 3600}
    signing_input = ".".join(
        _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8")) for part in (header, claims)
    )
    sig = key.sign(signing_input.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    assertion = signing_input + "." + _b64url(sig)
    try:
        r = requests.post(
            GOOGLE_TOKEN_URL,
            data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
            timeout=5,
        )
    except requests.RequestException as exc:
        raise NotificationError(f"FCM token request failed: {exc}") from exc
    if r.status_code != 200:
        raise NotificationError(f"FCM token request failed: {r.status_code}")
    token = r.json().get("access_token")
    if not token:
        raise NotificationError("FCM token response had no access_token")
    _FCM_TOKEN_CACHE.update({"token": token, "exp": now + 3600})
    return token


def fcm_send(token: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> bool:
    url = f"https://fcm.googleapis.com/v1/projects/{S.fcm_project_id}/messages:send"
    msg = {
        "message": {
            "token": token,
            "notification": {"title": title[:60], "body": body[:180]},
            "data": data or {},
        }
    }
    r = requests.post(url, headers={"Authorization": f"Bearer {fcm_access_token()}"}, json=msg, timeout=5)
    return r.status_code in (200, 202)


def send_push(user_id: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> int:
    """Push to every registered device. Raises unless at least one device accepted it."""
    if not S.push_enabled:
        raise NotificationError("Push delivery is disabled")
    r = T.push_devices.query(KeyConditionExpression=Key("user_id").eq(user_id), Limit=25)
    tokens = [it["token"] for it in r.get("Items", []) if it.get("token")]
    if not tokens:
        raise NotificationError("No push devices registered")
    delivered = 0
    for tok in tokens:
        try:
            if fcm_send(tok, title, body, data=data):
                delivered += 1
        except requests.RequestException as exc:
            logger.warning("FCM send failed for user %s: %s", user_id, exc)
    if not delivered:
        raise NotificationError("No push device accepted the message")
    return delivered
