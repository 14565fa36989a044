"""
MeetCoach FastAPI Application

Main application factory and configuration.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from meetcoach import __version__
from meetcoach.config import settings

from .routes import feedback, health, meetings, realtime

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# Lifespan Management
# ══════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info(
        "Starting MeetCoach API",
        version=__version__,
        environment=settings.app_env,
    )

    from meetcoach.db.redis import close_redis, init_redis
    from meetcoach.engine import engine

    # Feedback still flows without Redis; only history is lost
    try:
        await init_redis()
    except Exception as e:
        logger.error("Redis unavailable, feedback history disabled", error=str(e))

    await engine.start()

    logger.info("MeetCoach API started successfully")

    yield

    logger.info("Shutting down MeetCoach API")

    await engine.stop()
    await close_redis()
    logger.info("MeetCoach API shutdown complete")


# ══════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="MeetCoach API",
        description="Real-time conversational coaching for meeting hosts",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # ──────────────────────────────────────────────────────────
    # Middleware
    # ──────────────────────────────────────────────────────────

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing."""
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        logger.info(
            "Request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration, 2),
        )

        return response

    # ──────────────────────────────────────────────────────────
    # Routes
    # ──────────────────────────────────────────────────────────

    app.include_router(
        health.router,
        tags=["Health"],
    )

    api_prefix = f"/api/{settings.api_version}"

    app.include_router(
        meetings.router,
        prefix=f"{api_prefix}/meetings",
        tags=["Meetings"],
    )

    app.include_router(
        feedback.router,
        prefix=f"{api_prefix}/feedback",
        tags=["Feedback"],
    )

    # WebSocket routes
    app.include_router(
        realtime.router,
        prefix="/ws",
        tags=["Realtime"],
    )

    return app


# Create default app instance
app = create_app()
