"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from tryon_billing.api import webhooks
from tryon_billing.api.middleware import MetricsMiddleware, RequestIDMiddleware
from tryon_billing.api.v1 import coupons, credits, purchases, trial
from tryon_billing.config import settings
from tryon_billing.infrastructure.observability.logging import setup_logging
from tryon_billing.services.ledger import InstallationLocks

setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Try-On Billing",
        description="Credit ledger, trial lifecycle and overage billing for the virtual try-on app",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Shared by every request of this process
    app.state.installation_locks = InstallationLocks()

    # Order matters: last added = first executed
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(credits.router, prefix="/v1", tags=["credits"])
    app.include_router(coupons.router, prefix="/v1", tags=["coupons"])
    app.include_router(purchases.router, prefix="/v1", tags=["credit-packages"])
    app.include_router(trial.router, prefix="/v1", tags=["trial"])
    app.include_router(webhooks.router, tags=["webhooks"])

    return app


app = create_app()
