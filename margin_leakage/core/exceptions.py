# margin_leakage/core/exceptions.py
"""Custom exceptions and error handlers."""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, Optional

class AnalysisError(Exception):
    """Custom exception for analysis errors."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: str = None, extra: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.message = message
        self.details = details
        self.extra = extra or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

class FileProcessingError(AnalysisError):
    """Exception for file processing errors."""
    pass

class FileNotFoundInStoreError(AnalysisError):
    """Exception for files missing from the store or owned by someone else."""
    status_code = status.HTTP_404_NOT_FOUND

class ConfigurationError(AnalysisError):
    """Exception for configuration errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

class SessionError(AnalysisError):
    """Exception for session-related errors."""
    status_code = status.HTTP_404_NOT_FOUND

class CombineInProgressError(AnalysisError):
    """Raised when a combine is already running for a session."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

class LLMServiceError(AnalysisError):
    """Exception for failures reported by a hosted model."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

class LLMTimeoutError(LLMServiceError):
    """Exception for model calls that ran out of time."""
    status_code = status.HTTP_504_GATEWAY_TIMEOUT

class ResponseParseError(AnalysisError):
    """Exception for model replies that could not be coerced into the expected shape."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

# Error handlers
async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    """Handle custom analysis errors."""
    content = {
        "error": exc.message,
        "details": exc.details,
        "type": exc.__class__.__name__
    }
    content.update(exc.extra)
    return JSONResponse(status_code=exc.status_code, content=content)

async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": exc.errors(),
            "type": "ValidationError"
        }
    )

async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "type": "HTTPException"
        }
    )

async def general_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions."""
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
            "type": exc.__class__.__name__
        }
    )
