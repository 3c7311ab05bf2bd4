from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from creator_billing.auth.deps import require_jobs_api_key
from creator_billing.core.logs import audit_line
from creator_billing.metrics import record_job_run
from creator_billing.models import BillingJobReq, BillingJobResp, JobFailedResp, ReminderJobResp, ScanJobResp
from creator_billing.services.billing import JOB_BILLING, process_recurring_billing
from creator_billing.services.reminder_processor import process_due_reminders
from creator_billing.services.reminders import scan_and_schedule_missed_reminders
from creator_billing.services.retries import JOB_RETRIES, process_retries

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["jobs"],
    dependencies=[Depends(require_jobs_api_key)],
    responses={500: {"model": JobFailedResp}},
)

JOB_REMINDERS = "scheduled_reminders"
JOB_SCAN_REMINDERS = "scan_missed_reminders"


def run_job(job: str, fn: Callable[[], Dict[str, Any]]) -> Any:
    """Run one batch job synchronously and wrap its summary with timing."""
    start = time.perf_counter()
    try:
        summary = fn()
    except Exception as exc:
        elapsed = time.perf_counter() - start
        logger.exception("Job %s failed", job)
        record_job_run(job, "error", elapsed)
        audit_line("job_failed", job=job, error=str(exc), durationMs=int(elapsed * 1000))
        return JSONResponse(status_code=500, content={"error": "JOB_FAILED", "job": job})

    elapsed = time.perf_counter() - start
    out = {"job": job, **summary, "durationMs": int(elapsed * 1000)}
    record_job_run(job, "ok", elapsed)
    audit_line("job_completed", **{k: v for k, v in out.items() if k != "errors"}, errorCount=len(summary.get("errors") or []))
    return out


@router.post("/jobs/billing", response_model=BillingJobResp)
def billing_job(body: Optional[BillingJobReq] = None):
    body = body or BillingJobReq()
    return run_job(
        JOB_BILLING,
        lambda: process_recurring_billing(cursor=body.cursor, max_items=body.max_items).as_dict(),
    )


@router.post("/jobs/retries", response_model=BillingJobResp)
def retries_job():
    return run_job(JOB_RETRIES, lambda: process_retries().as_dict())


@router.post("/jobs/scheduled-reminders", response_model=ReminderJobResp)
def reminders_job():
    return run_job(JOB_REMINDERS, lambda: process_due_reminders().as_dict())


@router.post("/jobs/scan-missed-reminders", response_model=ScanJobResp)
def scan_reminders_job():
    return run_job(JOB_SCAN_REMINDERS, lambda: {"scheduled": scan_and_schedule_missed_reminders()})
