from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, conint

class BillingJobReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    # Resume a previous run that stopped at max_items.
    cursor: Optional[str] = None
    max_items: Optional[conint(ge=1, le=10000)] = Field(
        default=None, validation_alias=AliasChoices("max_items", "maxItems")
    )

class JobSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    job: str
    duration_ms: int = Field(alias="durationMs")

class BillingJobResp(JobSummary):
    processed: int
    succeeded: int
    failed: int
    skipped: int
    errors: List[Dict[str, str]] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")

class ReminderJobResp(JobSummary):
    processed: int
    sent: int
    failed: int
    skipped: int
    canceled: int
    errors: List[Dict[str, str]] = Field(default_factory=list)

class ScanJobResp(JobSummary):
    scheduled: int

class JobFailedResp(BaseModel):
    error: str = "JOB_FAILED"
    job: str

class WebhookAck(BaseModel):
    ok: bool = True
