from __future__ import annotations

import json
import logging
from typing import Any, Dict

from .settings import S
from .time import now_ts

_CONFIGURED = False


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    logging.basicConfig(
        level=getattr(logging, S.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _CONFIGURED = True


def mask_phone(phone: str) -> str:
    digits = (phone or "").strip()
    if len(digits) <= 4:
        return "****"
    return f"{digits[:3]}****{digits[-2:]}"


def audit_line(event: str, **fields: Any) -> None:
    """One compact JSON line per job run on stdout, for log shipping."""
    if not S.audit_log_enabled:
        return
    payload: Dict[str, Any] = {"event": event, "ts": now_ts(), **fields}
    print(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
