from __future__ import annotations

import hmac
from typing import Optional

from fastapi import HTTPException, Request

from creator_billing.core.settings import S

JOBS_API_KEY_HEADER = "x-jobs-api-key"


def jobs_key_matches(presented: Optional[str], expected: Optional[str] = None) -> bool:
    expected = S.jobs_api_key if expected is None else expected
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.strip().encode("utf-8"), expected.encode("utf-8"))


async def require_jobs_api_key(request: Request) -> None:
    """Guard for the scheduler-facing job endpoints.

    503 when no key is configured so a misconfigured deploy never runs jobs
    unauthenticated.
    """
    if not S.jobs_api_key:
        raise HTTPException(503, "Jobs API key not configured")
    if not jobs_key_matches(request.headers.get(JOBS_API_KEY_HEADER)):
        raise HTTPException(401, "Invalid jobs API key")
