from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from creator_billing.core.settings import S

METRICS_ENABLED = S.metrics_enabled

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)
APP_INFO = Info(
    "app",
    "Application metadata",
)

JOB_RUNS = Counter(
    "job_runs_total",
    "Batch job invocations",
    ["job", "outcome"],
)
JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Batch job wall time in seconds",
    ["job"],
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)
CHARGE_ATTEMPTS = Counter(
    "billing_charge_attempts_total",
    "Subscription charge outcomes",
    ["job", "outcome"],
)
LOCK_CONTENTION = Counter(
    "lock_contention_total",
    "Work skipped because another worker held the lock",
    ["scope"],
)
REMINDERS_PROCESSED = Counter(
    "reminders_processed_total",
    "Reminder delivery outcomes",
    ["type", "outcome"],
)
SIDE_EFFECT_FAILURES = Counter(
    "side_effect_failures_total",
    "Secondary actions that failed or timed out",
    ["name"],
)
RECONCILIATION_ALERTS = Counter(
    "reconciliation_alerts_total",
    "Post-charge failures raised for manual reconciliation",
    ["step"],
)

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


def record_job_run(job: str, outcome: str, seconds: float) -> None:
    JOB_RUNS.labels(job=job, outcome=outcome).inc()
    JOB_DURATION.labels(job=job).observe(seconds)


def record_charge(job: str, outcome: str) -> None:
    CHARGE_ATTEMPTS.labels(job=job, outcome=outcome).inc()


def record_reminder(reminder_type: str, outcome: str) -> None:
    REMINDERS_PROCESSED.labels(type=reminder_type, outcome=outcome).inc()


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    IN_PROGRESS.labels(method=method, path=path).inc()
    status_code = 500
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        IN_PROGRESS.labels(method=method, path=path).dec()
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
