"""Community Workflow Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from api.v1.router import api_v1_router
from app.config import get_settings
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db import session as db_session
from services.execution_service import build_action_services
from services.schedule_service import initialize_scheduler
from workflow.engine import WorkflowEngine
from workflow.scheduler import WorkflowScheduler

logger = structlog.get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        settings = get_settings()
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    # Production refuses to start without real secrets
    settings.validate_secrets()

    await db_session.init_db()

    # One engine per process so running executions can be cancelled in place
    app.state.engine = WorkflowEngine(services=build_action_services(db_session.AsyncSessionLocal))
    logger.info("Workflow execution engine ready", actions=len(app.state.engine.registry.available_kinds))

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = WorkflowScheduler()
        app.state.scheduler = scheduler
        loaded = await initialize_scheduler(scheduler, db_session.AsyncSessionLocal, app.state.engine)
        logger.info("Scheduler started", schedules=loaded)
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} started", environment=settings.ENVIRONMENT)
    yield

    if app.state.scheduler is not None:
        await app.state.scheduler.shutdown()
    await db_session.close_db()
    logger.info("Application shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow automation: DAG step execution with triggers, "
                    "conditions, retries, templated variables and cron schedules.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    setup_exception_handlers(app)

    @app.get("/api/health", tags=["Health"])
    async def health():
        return {"status": "ok", "version": settings.APP_VERSION}

    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)
    return app


app = create_app()
