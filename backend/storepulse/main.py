"""FastAPI application entrypoint.

Builds the AppContext, configures logging, Sentry and CORS, includes routers,
and exposes root and health endpoints.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from storepulse.context import AppContext, build_context
from storepulse.deps import Settings, get_settings
from storepulse.errors import StorePulseError
from storepulse.routers import analytics as analytics_router
from storepulse.routers import shopify_sync as shopify_sync_router
from storepulse.routers import shopify_webhooks as shopify_webhooks_router
from storepulse.routers import tenants as tenants_router
from storepulse.schemas import HealthResponse
from storepulse.telemetry import init_sentry

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """Build the API.

    Args:
        settings: Defaults to get_settings()
        context: Pre-built AppContext (tests); built from settings otherwise
    """
    settings = settings or (context.settings if context else get_settings())
    configure_logging(settings.LOG_LEVEL)
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    app = FastAPI(
        title="StorePulse API",
        description="""
        StorePulse ingests Shopify webhooks for many stores and derives
        checkout conversion, abandonment and revenue analytics.

        - **Webhooks**: signed Shopify events, one endpoint for all tenants
        - **Tenants**: store registration and dashboard metrics
        - **Sync**: on-demand backfill from the Shopify Admin API
        - **Analytics**: checkout funnel, refunds, abandonment sweep
        """,
        version="0.1.0",
    )
    app.state.context = context or build_context(settings)

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    origins = settings.cors_origins
    logger.info(f"[CORS] Allowed origins: {origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorePulseError)
    async def storepulse_error_handler(request: Request, exc: StorePulseError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(shopify_webhooks_router.router)  # Inbound Shopify webhooks
    app.include_router(tenants_router.router)  # Tenant registration + dashboard
    app.include_router(shopify_sync_router.router)  # Backfill sync
    app.include_router(analytics_router.router)  # Checkout/refund analytics

    @app.get("/", tags=["Health"])
    def root():
        return {"name": "StorePulse API", "version": "0.1.0", "docs": "/docs"}

    @app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return HealthResponse(status="ok")

    @app.on_event("shutdown")
    def shutdown_event():
        app.state.context.close()
        logger.info("[SHUTDOWN] Application context closed")

    return app


app = create_app()
