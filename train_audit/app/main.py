"""
FastAPI Application Entry Point.

Hosts the recorder's control API and the reference collector.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from train_audit.app.core.config import settings
from train_audit.app.core.observability import ObservabilityMiddleware, configure_logging
from train_audit.app.api.v1.router import router as api_v1_router
from train_audit.app.db.session import engine
from train_audit.app.services.recorder import BackgroundRecorder
from train_audit.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.
    
    1. Builds the host recorder; its start creates the tables, selects the
       strategy and resumes a session.
    2. Stops workers on shutdown, leaving the persisted session as it is.
    """
    configure_logging(settings.log_level)
    
    recorder = BackgroundRecorder(settings, engine=engine)
    await recorder.start()
    app.state.recorder = recorder
    yield
    await recorder.shutdown()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Offline telemetry recorder with durable queue and HTTP sync",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.
    
    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.
    
    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Train Audit Recorder",
        "docs": "/docs",
        "health": "/health",
        "status": f"/{settings.api_version}/recorder/status",
    }
