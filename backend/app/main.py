"""Workflow Orchestration Engine - FastAPI Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from db.database import AsyncSessionLocal, close_db, init_db
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from workflow.delay_scheduler import get_delay_scheduler
from workflow.recovery import DelayRecoveryService, build_resume_callback


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
    # Startup
    settings = get_settings()
    setup_logging()

    # Validate secrets are not using defaults in production
    try:
        settings.validate_secrets()
    except RuntimeError as e:
        print(f"[startup] FATAL: {e}")
        raise

    await init_db()

    # Delay timers resume waiting DELAY steps in a fresh session each
    scheduler = get_delay_scheduler()
    resume = build_resume_callback(AsyncSessionLocal)
    scheduler.set_resume_callback(resume)
    print("[startup] Delay scheduler ready")

    # Resume or re-arm delays that were waiting when the process stopped
    if settings.DELAY_RECOVERY_ON_STARTUP:
        recovery = DelayRecoveryService(AsyncSessionLocal, scheduler, resume=resume)
        results = await recovery.recover_all()
        if results:
            print(
                f"[startup] Delay recovery: {sum(1 for r in results if r.action == 'resumed')} resumed, "
                f"{sum(1 for r in results if r.action == 'scheduled')} scheduled, "
                f"{sum(1 for r in results if r.action == 'failed')} failed"
            )
        else:
            print("[startup] No waiting delays to recover")

    print(f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})")
    yield
    # Shutdown
    await scheduler.shutdown()
    await close_db()
    print("[shutdown] Application shutting down...")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Multi-tenant workflow orchestration: DAG templates, approvals, "
                    "delays and rule-based task assignment.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s liveness checks)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
