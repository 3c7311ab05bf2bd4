from __future__ import annotations

from fastapi import FastAPI

from creator_billing.core.logs import configure_logging
from creator_billing.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from creator_billing.routers.jobs import router as jobs_router
from creator_billing.routers.misc import router as misc_router
from creator_billing.routers.webhooks import router as webhooks_router

def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Creator Billing", version="0.1.0")

    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(misc_router)
    app.include_router(jobs_router)
    app.include_router(webhooks_router)

    return app

app = create_app()
