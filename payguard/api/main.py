"""
Payment Integrity API

FastAPI application for receipt validation, signed webhook intake and
the admin review surface.

Endpoints:
- POST /receipts/validate: Validate an App Store receipt
- POST /webhooks/app-store: Signed App Store Server Notifications
- POST /admin/login: Exchange the admin API key for a session
- GET  /admin/flagged, POST /admin/flagged/{id}/resolve,
  POST /admin/flagged/bulk-resolve: Review queue
- GET  /admin/alerts, POST /admin/alerts/{id}/acknowledge: Admin alerts
- GET  /health: Health check
- GET  /metrics: Prometheus metrics
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..config import settings
from ..errors import (
    ConfigurationError,
    MalformedResponse,
    NetworkFailure,
    RateLimitExceeded,
)
from ..metrics import metrics
from ..schemas import (
    AdminAlert,
    AdminIdentity,
    AdminLoginRequest,
    AdminSession,
    BulkReviewResolution,
    FlaggedTransaction,
    ReceiptValidationRequest,
    ReceiptValidationResult,
    ReviewResolution,
    ReviewStatus,
    WebhookRequest,
)
from ..utils.logger import get_logger
from .auth import create_admin_session, identify_login_key, require_api_token, require_metrics_token
from .dependencies import Services, client_origin, create_services, get_services
from .gateway import raise_if_limited, rate_limit_exceeded_handler, require_admin

logger = get_logger("payguard.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds services from settings unless they were injected up front
    (tests), and closes them on shutdown.
    """
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = await create_services()

    yield

    if owns_services:
        await app.state.services.close()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Payment Integrity API",
        description="Receipt validation, fraud scoring and admin review",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        """
        Health check endpoint.

        Returns service health status and component availability.
        """
        health = {"status": "healthy", "environment": settings.app_env, "components": {}}

        if services.redis_client:
            try:
                await services.redis_client.ping()
                health["components"]["redis"] = True
            except Exception as e:
                logger.warning("Redis health check failed: %s", e)
                health["components"]["redis"] = False

        if services.postgres:
            try:
                health["components"]["postgres"] = await services.postgres.health_check()
            except Exception as e:
                logger.warning("Postgres health check failed: %s", e)
                health["components"]["postgres"] = False

        if not all(health["components"].values()):
            health["status"] = "degraded"

        return health

    @app.get("/metrics")
    def metrics_endpoint(_: None = Depends(require_metrics_token)):
        """Expose Prometheus metrics with optional token auth."""
        if not settings.metrics_enabled:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # =========================================================================
    # Receipt validation
    # =========================================================================

    @app.post("/receipts/validate", response_model=ReceiptValidationResult)
    async def validate_receipt(
        body: ReceiptValidationRequest,
        _: None = Depends(require_api_token),
        services: Services = Depends(get_services),
    ):
        """
        Validate a client-submitted App Store receipt.

        Business-rule rejections return 200 with ``is_valid=false``.
        """
        metrics.requests_total.labels(endpoint="/receipts/validate").inc()
        try:
            return await services.validator.validate(
                body.receipt_data,
                account_id=body.account_id,
                device_info=body.device_info,
            )
        except ConfigurationError as e:
            metrics.errors_total.labels(error_type="ConfigurationError").inc()
            logger.error("Receipt validation misconfigured: %s", e)
            raise HTTPException(status_code=500, detail="Receipt validation is not configured")
        except MalformedResponse as e:
            metrics.errors_total.labels(error_type="MalformedResponse").inc()
            raise HTTPException(status_code=502, detail=str(e))
        except NetworkFailure as e:
            metrics.errors_total.labels(error_type="NetworkFailure").inc()
            raise HTTPException(status_code=503, detail=str(e))

    # =========================================================================
    # Webhooks
    # =========================================================================

    @app.post("/webhooks/app-store")
    async def app_store_webhook(
        body: WebhookRequest,
        request: Request,
        services: Services = Depends(get_services),
    ):
        """
        Signed App Store Server Notification intake.

        Always acknowledges with 200 so unverifiable payloads are ignored
        rather than retried.
        """
        metrics.requests_total.labels(endpoint="/webhooks/app-store").inc()
        notification = await services.verifier.verify(
            body.signed_payload, origin=client_origin(request)
        )
        if notification is None:
            return {"status": "ignored"}

        result = await services.processor.process(notification)
        return {"status": result}

    # =========================================================================
    # Admin
    # =========================================================================

    @app.post("/admin/login", response_model=AdminSession)
    async def admin_login(
        body: AdminLoginRequest,
        request: Request,
        services: Services = Depends(get_services),
    ):
        """Exchange the admin API key for a signed session (login tier)."""
        origin = client_origin(request)
        raise_if_limited(await services.rate_limiter.check_login_rate_limit(origin))

        identity = identify_login_key(body.api_key)
        if identity is None:
            logger.warning("Admin login failed: origin=%s", origin)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

        token = create_admin_session(identity.admin_id, email=identity.email, is_admin=identity.is_admin)
        logger.info("Admin login: admin_id=%s is_admin=%s origin=%s", identity.admin_id, identity.is_admin, origin)
        return AdminSession(
            access_token=token,
            expires_in=settings.admin_session_ttl_minutes * 60,
        )

    @app.get("/admin/flagged", response_model=list[FlaggedTransaction])
    async def list_flagged(
        status_filter: Optional[ReviewStatus] = Query(default=None, alias="status"),
        limit: int = 100,
        admin: AdminIdentity = Depends(require_admin()),
        services: Services = Depends(get_services),
    ):
        """List flagged transactions, most recent first."""
        return await services.review_queue.list_flagged(status=status_filter, limit=min(limit, 500))

    @app.post("/admin/flagged/bulk-resolve")
    async def bulk_resolve_flagged(
        body: BulkReviewResolution,
        admin: AdminIdentity = Depends(require_admin(bulk=True)),
        services: Services = Depends(get_services),
    ):
        """Resolve several flagged transactions at once (bulk tier)."""
        resolved: list[str] = []
        not_found: list[str] = []
        for flagged_id in body.flagged_ids:
            item = await services.review_queue.resolve(flagged_id, body.resolution, admin.admin_id)
            (resolved if item else not_found).append(flagged_id)

        logger.info("Bulk resolve by %s: resolved=%d not_found=%d", admin.admin_id, len(resolved), len(not_found))
        return {"resolved": resolved, "not_found": not_found}

    @app.post("/admin/flagged/{flagged_id}/resolve", response_model=FlaggedTransaction)
    async def resolve_flagged(
        flagged_id: str,
        body: ReviewResolution,
        admin: AdminIdentity = Depends(require_admin()),
        services: Services = Depends(get_services),
    ):
        """Resolve one flagged transaction."""
        item = await services.review_queue.resolve(flagged_id, body.resolution, admin.admin_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Flagged transaction not found")
        return item

    @app.get("/admin/alerts", response_model=list[AdminAlert])
    async def list_alerts(
        acknowledged: Optional[bool] = None,
        limit: int = 100,
        admin: AdminIdentity = Depends(require_admin()),
        services: Services = Depends(get_services),
    ):
        """List admin alerts, most recent first."""
        return await services.review_queue.list_alerts(acknowledged=acknowledged, limit=min(limit, 500))

    @app.post("/admin/alerts/{alert_id}/acknowledge", response_model=AdminAlert)
    async def acknowledge_alert(
        alert_id: str,
        admin: AdminIdentity = Depends(require_admin()),
        services: Services = Depends(get_services),
    ):
        """Acknowledge an admin alert."""
        alert = await services.review_queue.acknowledge_alert(alert_id, admin.admin_id)
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert not found")
        return alert


app = create_app()


# Entry point for running directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "payguard.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_debug,
    )
