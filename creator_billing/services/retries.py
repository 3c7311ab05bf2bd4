from __future__ import annotations

import logging
from typing import Dict, Optional

from creator_billing.core.ddb import as_int
from creator_billing.core.settings import S
from creator_billing.core.time import DAY_SECONDS, now_ts
from creator_billing.services import ledger
from creator_billing.services.billing import BillingResult, bill_one
from creator_billing.services.locks import LockService, get_lock_service
from creator_billing.services.paystack import PaystackClient, get_processor
from creator_billing.services.subscriptions import STATUS_ACTIVE, get_subscription

logger = logging.getLogger(__name__)

JOB_RETRIES = "retries"


def retry_delay(attempts: int) -> int:
    """Seconds to wait after the latest failure, given attempts so far."""
    delays = S.retry_delays_seconds
    if not delays:
        return 0
    if attempts < len(delays):
        return delays[attempts]
    return delays[-1]


def process_retries(
    now: Optional[int] = None,
    locks: Optional[LockService] = None,
    processor: Optional[PaystackClient] = None,
) -> BillingResult:
    now = now or now_ts()
    locks = locks or get_lock_service()
    processor = processor or get_processor()
    result = BillingResult()

    # newest failure per subscription
    latest: Dict[str, Dict] = {}
    for row in ledger.recent_failed_recurring(now - S.retry_window_days * DAY_SECONDS):
        latest.setdefault(row["subscription_id"], row)

    for sub_id, last_failure in latest.items():
        sub = get_subscription(sub_id)
        if not sub or sub.get("status") != STATUS_ACTIVE:
            continue
        period_end = as_int(sub.get("current_period_end"))
        if period_end > now:
            # failure belongs to a cycle that has since been paid
            continue

        attempts = ledger.count_failed_since(sub_id, period_end)
        if attempts >= S.max_retry_attempts:
            continue

        elapsed = now - as_int(last_failure.get("created_at"))
        if elapsed < retry_delay(attempts):
            result.skipped += 1
            continue

        bill_one(sub_id, result, JOB_RETRIES, now=now, locks=locks, processor=processor)

    logger.info(
        "Retries complete: %d processed, %d succeeded, %d failed, %d skipped",
        result.processed, result.succeeded, result.failed, result.skipped,
    )
    return result
