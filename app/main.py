"""
Slot Engine API

FastAPI application entry point. Wires the confirmation orchestrator and
reordering service onto ``app.state`` for the (external) HTTP layer and
exposes health probes.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.config import settings
from app.api.routes import health
from app.core.confirmation import ConfirmationOrchestrator
from app.core.errors import GatewayError, NotFoundError, SlotEngineError, ValidationError
from app.core.reordering import ReorderingService
from app.infra.cache import get_cache
from app.infra.database import async_session_factory, init_db, close_db
from app.infra.messaging import TwilioConversationsGateway
from app.infra.notifications import RedisNotificationChannel
from app.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    # Set health check start time
    health.set_start_time()

    # Initialize database (only in development - use migrations in production)
    if settings.is_development:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except Exception as e:
            logger.warning(f"Database init skipped: {e}")

    # Cache and notifications degrade when Redis is down
    if await RedisClient.get_client() is None:
        logger.warning("Redis unavailable - conversation lookups cached in memory, notifications dropped")

    gateway = TwilioConversationsGateway(cache=await get_cache())
    channel = RedisNotificationChannel()
    app.state.orchestrator = ConfirmationOrchestrator(
        gateway,
        channel,
        session_factory=async_session_factory,
    )
    app.state.reordering = ReorderingService(session_factory=async_session_factory)

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    # Flush in-flight notifications before Redis goes away
    await channel.drain()
    await gateway.close()

    # Close Redis connection
    await RedisClient.close()
    logger.info("Redis connection closed")

    # Close database connections
    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Slot Engine API",
    description="""
    Multi-tenant slot matching and confirmation engine.

    ## Features
    - Interval matching of requests against clinic time blocks
    - SMS proposal/confirmation lifecycle per appointment slot
    - Batched priority reordering with per-item results
    """,
    version=health.VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)


@app.exception_handler(SlotEngineError)
async def slot_engine_exception_handler(
    request: Request,
    exc: SlotEngineError,
) -> JSONResponse:
    """Map engine errors to responses carrying their org/appointment/slot context."""
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, GatewayError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_409_CONFLICT
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


# Health check routes
app.include_router(health.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """Basic API information."""
    return {
        "name": settings.app_name,
        "version": health.VERSION,
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
