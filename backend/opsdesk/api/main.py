"""
Ops Desk - FastAPI Application
==============================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from opsdesk.api import agents, approvals, auth, dashboard, delivery, escalations, events
from opsdesk.api import policy, projects, webhooks
from opsdesk.api.deps import Bus, DbSession
from opsdesk.core.config import settings
from opsdesk.core.database import close_db, get_db_session, init_db
from opsdesk.core.events import EventBus
from opsdesk.core.exceptions import NotFoundError, OpsDeskError, PolicyBlocked, ValidationError
from opsdesk.core.policy.sop import SopService
from opsdesk.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


ERROR_STATUS: dict[type[OpsDeskError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PolicyBlocked: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
}

ERROR_TITLES: dict[type[OpsDeskError], str] = {
    ValidationError: "Validation Error",
    PolicyBlocked: "Policy Blocked",
    NotFoundError: "Not Found",
}


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables and seed missing SOP steps
    - Open the shared outbound HTTP client for agent triggers

    Shutdown:
    - Close the HTTP client and database connections
    """
    logger.info("Starting Ops Desk", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    if settings.SOP_SEED_ON_STARTUP:
        async with get_db_session() as session:
            await SopService(session).seed_definitions()

    app.state.http_client = httpx.AsyncClient(
        timeout=settings.AGENT_TRIGGER_TIMEOUT_SECONDS,
    )

    yield

    logger.info("Shutting down Ops Desk")
    await app.state.http_client.aclose()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Ops Desk - human-in-the-loop operations dashboard",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # One bus per application; services receive it through dependencies
    app.state.event_bus = EventBus()

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(OpsDeskError)
    async def domain_exception_handler(request: Request, exc: OpsDeskError) -> JSONResponse:
        """Translate core errors into ErrorResponse bodies."""
        status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        logger.info(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            code=exc.code,
            reason=exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=ERROR_TITLES.get(type(exc), "Bad Request"),
                detail=exc.message,
                code=exc.code,
                escalation_id=getattr(exc, "escalation_id", None),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(mode="json"),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    # Health check (no prefix)
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(db: DbSession, bus: Bus) -> HealthResponse:
        """Report database reachability and live event subscribers."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.warning("health_database_unreachable", error=str(e))
            database = "unreachable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            event_subscribers=bus.subscriber_count,
        )

    # API v1 routes
    app.include_router(auth.router, prefix=settings.API_V1_PREFIX)
    app.include_router(projects.router, prefix=settings.API_V1_PREFIX)
    app.include_router(approvals.router, prefix=settings.API_V1_PREFIX)
    app.include_router(escalations.router, prefix=settings.API_V1_PREFIX)
    app.include_router(delivery.router, prefix=settings.API_V1_PREFIX)
    app.include_router(webhooks.router, prefix=settings.API_V1_PREFIX)
    app.include_router(agents.router, prefix=settings.API_V1_PREFIX)
    app.include_router(dashboard.router, prefix=settings.API_V1_PREFIX)
    app.include_router(policy.router, prefix=settings.API_V1_PREFIX)
    app.include_router(events.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "opsdesk.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
