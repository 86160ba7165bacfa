"""
FastAPI application entry point.

Run with: uvicorn tokenengine.main:app --reload
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from tokenengine._version import VERSION
from tokenengine.config import get_settings
from tokenengine.database import get_session_factory, init_db
from tokenengine.errors import EngineError, engine_error_handler

# Import models to ensure they're registered with SQLAlchemy
from tokenengine.models import (  # noqa: F401
    DistributionEvent,
    EngineEvent,
    HoldingRecord,
    MarketplaceListing,
    PayoutLine,
    TokenizedAsset,
    Trade,
)
from tokenengine.routers import (
    admin_router,
    assets_router,
    distributions_router,
    events_router,
    marketplace_router,
    settlement_router,
)
from tokenengine.services.scheduler import run_periodically
from tokenengine import telemetry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Startup: Create database tables if they don't exist, initialize telemetry,
    start the sweep loop when an interval is configured.
    Shutdown: Stop the sweep loop.
    """
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    # Startup
    await init_db()
    logger.info("Database initialized")

    if telemetry.setup_telemetry(settings):
        # Attach OTLP handler to root logger for log export
        handler = telemetry.get_log_handler()
        if handler:
            logging.getLogger().addHandler(handler)
        logger.info("Telemetry initialized (OTLP metrics + logs enabled)")
    else:
        logger.info("Telemetry disabled")

    sweeper = None
    if settings.scheduler_interval_seconds > 0:
        sweeper = asyncio.create_task(
            run_periodically(get_session_factory(), settings.scheduler_interval_seconds)
        )

    yield

    # Shutdown
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    logger.info("Application shutting down")


# Create FastAPI application
app = FastAPI(
    title="Property Tokenization Engine",
    description="Fractional property tokenization, trading and revenue distribution",
    version=VERSION,
    lifespan=lifespan,
)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render malformed requests with the same envelope as engine errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


app.add_exception_handler(EngineError, engine_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)


# Register routers
# Operator routes stay at /admin (no API versioning for admin)
app.include_router(admin_router, prefix="/admin", tags=["admin"])
app.include_router(assets_router, prefix="/api/v1", tags=["assets"])
app.include_router(marketplace_router, prefix="/api/v1", tags=["marketplace"])
app.include_router(distributions_router, prefix="/api/v1", tags=["distributions"])
app.include_router(settlement_router, prefix="/api/v1", tags=["settlement"])
app.include_router(events_router, prefix="/api/v1", tags=["events"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/version")
async def get_version():
    """Get API version information."""
    return {
        "version": VERSION,
        "api_version": "v1",
    }
