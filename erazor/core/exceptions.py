"""
Global Exception Handling

Error taxonomy for the upload path and the job workers, plus FastAPI
handlers that render every error in the same envelope the clients expect:

    {"success": false, "statusCode": 429, "path": "/api/v1/images/process",
     "timestamp": "...", "message": "...", "details": {...}}
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from erazor.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ErazorBaseException(Exception):
    """Base exception for the service."""

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


class ValidationError(ErazorBaseException):
    """Raised when an upload fails type or size validation. Never enqueued."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class AuthorizationError(ErazorBaseException):
    """Raised when a caller asks for another identity's data or stream."""

    def __init__(self, message: str = "You can only access your own resources", **kwargs):
        super().__init__(message, code=403, **kwargs)


class NotFoundError(ErazorBaseException):
    """Raised when a requested record does not exist."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


class QuotaExceededError(ErazorBaseException):
    """Raised when a caller is over its tier quota or rate limit."""

    def __init__(self, message: str, tier: str, **kwargs):
        super().__init__(message, code=429, **kwargs)
        self.details["tier"] = tier


class InsufficientCreditError(ErazorBaseException):
    """Raised when a paid caller has no remaining meter balance."""

    def __init__(self, message: str = "No remaining credits on your plan", **kwargs):
        super().__init__(message, code=402, **kwargs)


class TransientInfraError(ErazorBaseException):
    """Raised when the queue or cache is unreachable on the request path."""

    def __init__(self, message: str = "Service temporarily unavailable, please retry", **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.details["retryable"] = True


class ExternalAPIError(ErazorBaseException):
    """Raised when an external API call fails with a non-retryable error."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class ProcessorTransientError(ExternalAPIError):
    """Network error, timeout or 5xx from the background-removal processor."""

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="processor", http_status=http_status, **kwargs)


class ProcessingUnavailableError(ErazorBaseException):
    """Surfaced when a submission fails for a reason that looks transient."""

    def __init__(self, message: str = "Image processing is temporarily unavailable", **kwargs):
        super().__init__(message, code=503, **kwargs)


class BillingError(ExternalAPIError):
    """Raised when the billing API cannot be reached or rejects a call."""

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="billing", http_status=http_status, **kwargs)


class TempFileMissingError(ErazorBaseException):
    """Raised when a submit job's temp upload is gone (already consumed)."""

    def __init__(self, storage_key: str, **kwargs):
        super().__init__(f"Temp upload not found: {storage_key}", code=410, **kwargs)
        self.details["storage_key"] = storage_key


class InvalidTransitionError(ErazorBaseException):
    """Raised when a task or job is moved to a state it cannot reach."""

    def __init__(self, current: str, target: str, **kwargs):
        super().__init__(f"Invalid transition {current} -> {target}", code=409, **kwargs)
        self.details["current"] = current
        self.details["target"] = target


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(request: Request, status_code: int, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = {
        "success": False,
        "statusCode": status_code,
        "path": str(request.url.path),
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "message": message,
    }
    if details:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ErazorBaseException)
    async def erazor_exception_handler(request: Request, exc: ErazorBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "request_rejected",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            path=str(request.url.path),
            details=exc.details
        )

        headers = {"Retry-After": "30"} if exc.code == 503 else None
        return JSONResponse(
            status_code=exc.code,
            content=_error_body(request, exc.code, exc.message, exc.details),
            headers=headers
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.status_code, str(exc.detail)),
            headers=getattr(exc, "headers", None)
        )

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
            content=_error_body(request, 500, "Internal server error")
        )
