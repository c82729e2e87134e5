"""FastAPI application for the Slack integration gateway.

``create_app()`` builds the app around an optional pre-built
:class:`~chatgate.gateway.Gateway` (tests inject one); without it the
lifespan handler builds the production gateway from the environment.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatgate.config import get_settings
from chatgate.constants import API_PREFIX
from chatgate.errors import ErrorCategory
from chatgate.errors import GatewayError
from chatgate.errors import PreconditionError
from chatgate.errors import RateLimitError
from chatgate.gateway import Gateway
from chatgate.gateway import build_gateway
from chatgate.routers.events import router as events_router
from chatgate.routers.metrics import router as metrics_router
from chatgate.routers.slack import router as slack_router
from chatgate.utils.log import configure_logging

logger = logging.getLogger(__name__)

# GatewayError category -> HTTP status
_STATUS_BY_CATEGORY = {
    ErrorCategory.CONFIGURATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.ACCESS: 403,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.DATA_FORMAT: 502,
    ErrorCategory.UNKNOWN: 500,
}


def status_for_error(exc: GatewayError) -> int:
    if isinstance(exc, PreconditionError):
        return 409
    return _STATUS_BY_CATEGORY.get(exc.category, 500)


def _cors_origins(raw: str, testing: bool) -> list:
    if raw.strip():
        return [o.strip() for o in raw.split(",") if o.strip()]
    if testing:
        return ["*"]
    return ["http://localhost:3000"]


def create_app(gateway: Optional[Gateway] = None) -> FastAPI:
    settings = gateway.settings if gateway is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the gateway services and stop them on shutdown."""

        configure_logging(settings.log_level)
        active = gateway or build_gateway(settings)
        app.state.gateway = active
        # Health loop sleeps on the real clock; tests drive checks directly.
        await active.start(health_check=not settings.testing)
        logger.info("Slack gateway ready")

        yield

        try:
            await active.stop()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    app = FastAPI(title="chatgate", redirect_slashes=True, lifespan=lifespan)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        headers = {}
        if isinstance(exc, RateLimitError) and exc.retry_after:
            headers["Retry-After"] = str(int(exc.retry_after))
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "category": exc.category.value, "code": exc.code},
            headers=headers,
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings.allowed_cors_origins, settings.testing),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(slack_router, prefix=API_PREFIX)
    app.include_router(events_router, prefix=API_PREFIX)
    app.include_router(metrics_router)  # Prometheus expects /metrics at the root

    @app.get("/health")
    async def health_check():
        active: Gateway = app.state.gateway
        return {
            "status": "healthy",
            "connection": active.connection.get_status().status,
            "scheduler_running": active.scheduler.is_running,
            "active_jobs": len(active.orchestrator.get_active_jobs()),
        }

    return app


app = create_app()

__all__ = ["app", "build_gateway", "create_app", "status_for_error"]
