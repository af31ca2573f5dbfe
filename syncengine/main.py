"""Main FastAPI application."""

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging

from syncengine.core.config import get_settings
from syncengine.core.database import database
from syncengine.core.exceptions import (
    SyncEngineError,
    ValidationError,
    NotFoundError,
    ConfigInactiveError,
    SyncInProgressError,
)
from syncengine.api import health, integrations
from syncengine.services import SyncScheduler
from syncengine.utils.logging import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

# Get settings
settings = get_settings()

ERROR_STATUS_CODES = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConfigInactiveError, status.HTTP_409_CONFLICT),
    (SyncInProgressError, status.HTTP_409_CONFLICT),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting up sync engine service...")
    await database.connect()
    await database.ensure_indexes()
    
    scheduler = None
    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler = SyncScheduler(database)
        scheduler_task = asyncio.create_task(scheduler.run_forever())
    
    yield
    
    # Shutdown
    logger.info("Shutting down sync engine service...")
    if scheduler_task:
        scheduler.stop()
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
    await database.disconnect()


# Create FastAPI app
app = FastAPI(
    title="Sync Engine Service",
    description="Synchronizes tenant business records with external accounting, tax and payment systems",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(
    integrations.router,
    prefix="/api/v1/integrations",
    tags=["integrations"]
)


@app.exception_handler(SyncEngineError)
async def sync_engine_exception_handler(request: Request, exc: SyncEngineError):
    """Map domain errors to HTTP responses."""
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            content = {"detail": str(exc)}
            if isinstance(exc, ValidationError) and exc.errors:
                content["errors"] = exc.errors
            return JSONResponse(status_code=status_code, content=content)
    
    logger.error(f"Unhandled sync engine error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "syncengine.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
