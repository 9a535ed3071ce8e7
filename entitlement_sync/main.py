"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitlement_sync import __version__
from entitlement_sync.logging_config import configure_logging, get_logger
from entitlement_sync.middleware import ContextMiddleware, RequestLoggingMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan.

    Startup initializes Firebase (when Firestore or client auth needs it),
    installs the configured entitlement store and builds the billing client.
    Shutdown releases them in reverse order.
    """
    from entitlement_sync.config import get_config
    from entitlement_sync.repositories.entitlement_store import (
        reset_entitlement_store,
        set_entitlement_store,
    )
    from entitlement_sync.services.billing_client import get_billing_client, reset_billing_client
    from entitlement_sync.services.firebase import get_firebase_context, reset_firebase_context
    from entitlement_sync.services.sync_orchestrator import reset_sync_orchestrator

    logger.info("service_starting", version=__version__)
    config = get_config()

    try:
        if config.store.backend == "firestore" or config.auth_enabled:
            firebase = get_firebase_context()
            firebase.initialize()
            if config.store.backend == "firestore":
                from entitlement_sync.repositories.firestore_store import (
                    FirestoreEntitlementStore,
                )

                set_entitlement_store(
                    FirestoreEntitlementStore(firebase.firestore(), config.store.collection)
                )

        client = get_billing_client()
        logger.info(
            "service_started",
            package_name=config.package_name,
            store_backend=config.store.backend,
            billing_api=config.billing.api_base_url,
            auth_enabled=config.auth_enabled,
            webhook_auth=bool(config.webhook_auth_token),
        )
        yield
        await client.aclose()
    finally:
        logger.info("service_shutting_down")
        reset_sync_orchestrator()
        reset_billing_client()
        if config.store.backend == "firestore":
            reset_entitlement_store()
        reset_firebase_context()
        logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Entitlement Sync",
        description="Reconciles premium entitlements with Google Play Billing",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from entitlement_sync.api.entitlements import router as entitlements_router
    from entitlement_sync.api.webhooks import router as webhooks_router

    app.include_router(entitlements_router)
    app.include_router(webhooks_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "service": "entitlement-sync",
            "status": "running",
            "version": __version__,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check."""
        from entitlement_sync.config import get_config
        from entitlement_sync.services.firebase import get_firebase_context

        config = get_config()
        return {
            "status": "healthy",
            "store": config.store.backend,
            "firebase": "initialized" if get_firebase_context().is_initialized else "disabled",
            "config": f"loaded ({len(config.settings.products)} products)",
        }

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Return Google-style error bodies as-is instead of wrapping them in ``detail``."""
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            content = exc.detail
        else:
            content = {"detail": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": 500,
                    "message": "An unexpected error occurred",
                    "status": "INTERNAL",
                    "kind": "generic",
                    "retryable": False,
                }
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
