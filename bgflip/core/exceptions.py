"""
Global Exception Handling

Error taxonomy for the upload/processing service and the FastAPI handlers
that turn it into structured JSON responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bgflip.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class BgFlipError(Exception):
    """Base exception for the background remover service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        phase: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.phase = phase
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BgFlipError):
    """Raised when an uploaded file is rejected (type, size, unreadable)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ConfigurationError(BgFlipError):
    """Raised when the background removal provider is misconfigured."""

    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["errors"] = errors or []


class ImageNotFoundError(BgFlipError):
    """Raised when no job exists for the requested id."""

    def __init__(self, image_id: str, **kwargs):
        super().__init__(f"Image not found: {image_id}", code=404, **kwargs)
        self.details["id"] = image_id


class StorageError(BgFlipError):
    """Raised when a blob store operation fails."""

    def __init__(self, message: str, bucket: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if bucket:
            self.details["bucket"] = bucket


class DatabaseError(BgFlipError):
    """Raised when the metadata store cannot be read or written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class BackgroundRemovalError(BgFlipError):
    """Raised when a background removal provider rejects or fails a request."""

    def __init__(
        self,
        message: str,
        service: str,
        http_status: Optional[int] = None,
        code: int = 502,
        **kwargs
    ):
        super().__init__(message, code=code, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class BackgroundRemovalTimeoutError(BackgroundRemovalError):
    """Raised when a provider call is aborted by the client-side timeout."""

    def __init__(self, service: str, timeout_seconds: float, **kwargs):
        super().__init__(
            f"{service} request timeout after {timeout_seconds:.0f}s",
            service=service,
            code=504,
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


class DeadlineExceededError(BgFlipError):
    """Raised once the pipeline deadline has passed, before or during a phase."""

    def __init__(self, phase: str, budget_seconds: float, during: bool = False, **kwargs):
        where = "during" if during else "before"
        super().__init__(
            f"pipeline deadline of {budget_seconds:.0f}s exceeded {where} {phase} (timeout)",
            code=504,
            phase=phase,
            **kwargs
        )
        self.details["budget_seconds"] = budget_seconds


class PipelineStageError(BgFlipError):
    """Raised when a pipeline phase fails for any other reason."""

    def __init__(self, message: str, phase: str, **kwargs):
        super().__init__(message, code=500, phase=phase, **kwargs)


class InvalidTransitionError(BgFlipError):
    """Raised when a job status change would move backwards."""

    def __init__(self, current: str, requested: str, **kwargs):
        super().__init__(
            f"Cannot move job from '{current}' to '{requested}'",
            code=409,
            **kwargs
        )
        self.details["current"] = current
        self.details["requested"] = requested


# =============================================================================
# Exception Handlers
# =============================================================================

def error_body(exc: BgFlipError) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "job_id": exc.job_id or job_id_var.get(),
        "code": exc.code,
        "phase": exc.phase,
        "details": exc.details,
        "timestamp": _utc_timestamp()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(BgFlipError)
    async def bgflip_exception_handler(request: Request, exc: BgFlipError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "request_failed",
            error=exc.message,
            code=exc.code,
            phase=exc.phase,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(status_code=exc.code, content=error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
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
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
