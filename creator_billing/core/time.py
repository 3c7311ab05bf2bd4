from __future__ import annotations

import calendar
import time
from datetime import datetime, timezone

DAY_SECONDS = 86400
HOUR_SECONDS = 3600

# Anchor days above this are clamped so that every month can hold them.
MAX_ANCHOR_DAY = 28


def now_ts() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def to_datetime(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def to_ts(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def add_months_capped(ts: int, months: int = 1) -> int:
    """Add calendar months to an epoch timestamp.

    An anchor day of the 29th-31st always lands on the 28th of the target
    month, so a subscription anchored on Jan 31 renews on Feb 28, Mar 28, ...
    and never rolls into the first days of the following month.
    """
    dt = to_datetime(ts)
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, MAX_ANCHOR_DAY)
    day = min(day, calendar.monthrange(year, month)[1])
    return to_ts(dt.replace(year=year, month=month, day=day))


def cycle_month(ts: int) -> str:
    """YYYYMM of the billing cycle that a period end belongs to."""
    return to_datetime(ts).strftime("%Y%m")


def iso(ts: int) -> str:
    return to_datetime(ts).isoformat()
