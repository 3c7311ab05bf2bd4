from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Any, Dict, Optional

import requests

from creator_billing.core.errors import ProcessorError
from creator_billing.core.settings import S

logger = logging.getLogger(__name__)

_REF_UNSAFE = re.compile(r"[^A-Za-z0-9-]")


def sanitize_reference(raw: str) -> str:
    """Paystack references accept alphanumerics and hyphens only."""
    return _REF_UNSAFE.sub("", raw.replace("_", "-"))


class PaystackClient:
    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None, timeout: Optional[int] = None, session: Optional[requests.Session] = None) -> None:
        self.secret_key = secret_key if secret_key is not None else S.paystack_secret_key
        self.base_url = (base_url or S.paystack_base_url).rstrip("/")
        self.timeout = timeout or S.paystack_timeout_seconds
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, reference: Optional[str] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise ProcessorError("Paystack is not configured", reference=reference)
        try:
            r = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProcessorError(f"Paystack request failed: {exc}", reference=reference) from exc

        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code >= 300 or not body.get("status"):
            # Request bodies can carry subscriber emails; only the path is logged.
            logger.warning("Paystack API error on %s: %s %s", path, r.status_code, body.get("message"))
            raise ProcessorError(body.get("message") or f"Paystack API error ({r.status_code})", status_code=r.status_code, reference=reference)
        return body.get("data") or {}

    def _post(self, path: str, payload: Dict[str, Any], reference: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", path, payload, reference=reference)

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}", reference=reference)

    def charge_authorization(
        self,
        *,
        authorization_code: str,
        email: str,
        amount_cents: int,
        currency: str,
        reference: str,
        metadata: Dict[str, Any],
        subaccount_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "authorization_code": authorization_code,
            "email": email,
            "amount": int(amount_cents),
            "currency": currency.upper(),
            "reference": reference,
            "metadata": metadata,
        }
        if subaccount_code:
            # Legacy model: Paystack splits the settlement; the platform bears fees
            payload["subaccount"] = subaccount_code
            payload["bearer"] = "account"
        data = self._post("/transaction/charge_authorization", payload, reference=reference)
        status = data.get("status")
        if status != "success":
            raise ProcessorError(
                data.get("gateway_response") or f"Charge not successful: {status}",
                status_code=402,
                reference=reference,
            )
        return data

    def initiate_transfer(self, *, amount_cents: int, recipient_code: str, reason: str, reference: str) -> Dict[str, Any]:
        data = self._post(
            "/transfer",
            {
                "source": "balance",
                "amount": int(amount_cents),
                "recipient": recipient_code,
                "reason": reason[:100],
                "reference": reference,
            },
            reference=reference,
        )
        return {
            "transfer_code": data.get("transfer_code"),
            "reference": data.get("reference") or reference,
            "status": data.get("status"),
        }


def verify_signature(raw_body: bytes, signature: Optional[str], secret_key: Optional[str] = None) -> bool:
    key = secret_key if secret_key is not None else S.paystack_secret_key
    if not key or not signature:
        return False
    expected = hmac.new(key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


_DEFAULT: Optional[PaystackClient] = None


def get_processor() -> PaystackClient:
    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = PaystackClient()
    return _DEFAULT
