"""
Global Exception Handling

Provides the error taxonomy for the upscaling pipeline and structured
JSON error responses for the API.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chunked_upscaler.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# =============================================================================
# Custom Exceptions
# =============================================================================

class UpscalerBaseException(Exception):
    """Base exception for user-facing upscaler errors."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(UpscalerBaseException):
    """Raised when an upload is an unsupported format or too large."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class DecodeError(UpscalerBaseException):
    """Raised when image bytes cannot be decoded. No job is created."""

    def __init__(self, message: str = "Unable to load image, please check the file format", **kwargs):
        super().__init__(message, code=422, **kwargs)


class ProcessingError(UpscalerBaseException):
    """Raised when tiling or stitching fails unexpectedly. The whole job fails."""

    def __init__(self, message: str = "An error occurred during processing, please retry", **kwargs):
        super().__init__(message, code=500, **kwargs)


class JobNotFoundError(UpscalerBaseException):
    """Raised when a job id is unknown to the controller."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class ResultNotReadyError(UpscalerBaseException):
    """Raised when a result is requested for a job that has not completed."""

    def __init__(self, job_id: str, phase: str, **kwargs):
        super().__init__(
            f"Job {job_id} has no result (phase: {phase})",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.details["phase"] = phase


class ProcessingCancelled(Exception):
    """
    Cooperative cancellation signal.

    Deliberately not an UpscalerBaseException: cancellation is an outcome,
    never reported as an error.
    """

    def __init__(self, message: str = "Processing cancelled"):
        super().__init__(message)


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UpscalerBaseException)
    async def upscaler_exception_handler(request: Request, exc: UpscalerBaseException):
        job_id = exc.job_id or job_id_var.get()

        log = logger.error if exc.code >= 500 else logger.warning
        log(
            "upscaler_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "job_id": job_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        job_id = job_id_var.get()

        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id,
                "code": 500,
                "timestamp": _timestamp()
            }
        )
