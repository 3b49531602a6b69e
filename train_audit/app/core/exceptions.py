"""
Custom exceptions and error handlers for consistent error responses.

Provides the recorder's failure taxonomy and the global exception handlers
used by the local control API.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger("train_audit.api")


class AppException(Exception):
    """Base application exception."""
    
    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class StorageUnavailableError(AppException):
    """Raised when the local durable store cannot be reached. Transient."""
    
    def __init__(self, message: str = "Local storage unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STORAGE_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class NetworkFailureError(AppException):
    """Raised when the sink is unreachable or does not confirm a batch."""
    
    def __init__(self, message: str = "Sink did not accept the batch", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_SINK_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


class PositionUnavailableError(AppException):
    """Raised when no live position fix has arrived yet."""
    
    def __init__(self, message: str = "No position fix available"):
        super().__init__(
            message=message,
            error_code="ERR_POSITION_001",
            status_code=status.HTTP_409_CONFLICT
        )


class CapabilityUnavailableError(AppException):
    """Raised when an execution strategy's platform primitive is missing."""
    
    def __init__(self, capability: str):
        super().__init__(
            message=f"Capability '{capability}' is not available",
            error_code="ERR_CAPABILITY_001",
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            details={"capability": capability}
        )


class RecorderNotReadyError(AppException):
    """Raised when the API is used before the recorder has been started."""
    
    def __init__(self):
        super().__init__(
            message="Recorder is not running",
            error_code="ERR_RECORDER_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }
    
    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")
    
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)
    
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
