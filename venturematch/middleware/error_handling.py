"""
Unified Error Handling.

Provides consistent error handling across the matching service with
custom exceptions, error codes, and formatted responses.

Key features:
1. Custom exception hierarchy shared by services and routers
2. Error code system with HTTP status mapping
3. Consistent JSON error envelope
4. Error tracking for monitoring
"""
import os
import traceback
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass
from uuid import uuid4

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Application error codes."""
    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"
    UNAUTHORIZED = "E1003"
    FORBIDDEN = "E1004"
    RATE_LIMITED = "E1005"
    BAD_REQUEST = "E1006"
    TIMEOUT = "E1007"

    # Profile errors (2xxx)
    PROFILE_NOT_FOUND = "E2001"
    INVALID_PROFILE = "E2002"

    # Matching errors (3xxx)
    QUOTA_EXCEEDED = "E3001"
    COOLDOWN_ACTIVE = "E3002"

    # Search index errors (4xxx)
    INDEX_UNAVAILABLE = "E4001"

    # External service errors (6xxx)
    CACHE_ERROR = "E6002"


# Error code to HTTP status mapping
ERROR_STATUS_MAP = {
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.PROFILE_NOT_FOUND: 404,
    ErrorCode.INVALID_PROFILE: 500,
    ErrorCode.QUOTA_EXCEEDED: 429,
    ErrorCode.COOLDOWN_ACTIVE: 400,
    ErrorCode.INDEX_UNAVAILABLE: 503,
    ErrorCode.CACHE_ERROR: 503,
}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ErrorResponse:
    """Standardized error response."""
    error_id: str
    code: str
    message: str
    status_code: int
    timestamp: str
    path: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "error": {
                "id": self.error_id,
                "code": self.code,
                "message": self.message,
                "timestamp": self.timestamp
            }
        }
        if self.path:
            result["error"]["path"] = self.path
        if self.details:
            result["error"]["details"] = self.details
        if self.suggestion:
            result["error"]["suggestion"] = self.suggestion
        return result


class AppException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        self.suggestion = suggestion
        self.original_error = original_error
        self.status_code = ERROR_STATUS_MAP.get(code, 500)
        super().__init__(message)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
            suggestion="Please check your input and try again"
        )


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} with ID '{resource_id}' not found"
        super().__init__(
            code=code,
            message=message,
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class InvalidProfileError(AppException):
    """A profile is missing identity fields. Retrying will not help."""

    def __init__(self, message: str, profile_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_PROFILE,
            message=message,
            details={"profile_id": profile_id} if profile_id else None
        )


class QuotaExceededException(AppException):
    """Usage limit reached for the current period."""

    def __init__(self, action: str, retry_after_seconds: int, limit: Optional[int] = None):
        super().__init__(
            code=ErrorCode.QUOTA_EXCEEDED,
            message=f"Usage limit reached for '{action}'",
            details={
                "action": action,
                "limit": limit,
                "retry_after_seconds": retry_after_seconds
            },
            suggestion="Upgrade your subscription or try again later"
        )
        self.retry_after_seconds = retry_after_seconds


class CooldownActiveException(AppException):
    """Recommendation refresh requested before the tier cooldown elapsed."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            code=ErrorCode.COOLDOWN_ACTIVE,
            message="Refresh cooldown active",
            details={"retry_after_seconds": retry_after_seconds},
            suggestion="Please wait before refreshing recommendations again"
        )
        self.retry_after_seconds = retry_after_seconds


class IndexUnavailableError(AppException):
    """Search index backend cannot be reached."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.INDEX_UNAVAILABLE,
            message=message,
            suggestion="Please try again later",
            original_error=original_error
        )


class OperationTimeoutException(AppException):
    """A scoring, ranking or search call exceeded its deadline."""

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None):
        super().__init__(
            code=ErrorCode.TIMEOUT,
            message=f"Operation '{operation}' timed out",
            details={"operation": operation, "timeout_seconds": timeout_seconds},
            suggestion="Retry with a longer timeout or narrower query"
        )


class ErrorTracker:
    """Tracks errors for monitoring and alerting."""

    def __init__(self):
        self._errors: Dict[str, list] = {}
        self._error_counts: Dict[str, int] = {}
        self.max_stored_errors = int(os.getenv("MAX_STORED_ERRORS", "1000"))

    def track(
        self,
        error_id: str,
        error_code: ErrorCode,
        message: str,
        request_path: Optional[str] = None,
        stack_trace: Optional[str] = None
    ) -> None:
        """Track an error occurrence."""
        error_record = {
            "error_id": error_id,
            "code": error_code.value,
            "message": message,
            "path": request_path,
            "timestamp": _utcnow_iso(),
            "stack_trace": stack_trace
        }

        code_key = error_code.value
        self._errors.setdefault(code_key, []).append(error_record)
        if len(self._errors[code_key]) > self.max_stored_errors:
            self._errors[code_key] = self._errors[code_key][-self.max_stored_errors:]

        self._error_counts[code_key] = self._error_counts.get(code_key, 0) + 1

        # 5xx conditions are upstream bugs or outages, the rest are caller errors
        log = logger.error if ERROR_STATUS_MAP.get(error_code, 500) >= 500 else logger.info
        log(
            f"Error tracked: {error_id} - {error_code.value}: {message}",
            extra={"error_id": error_id, "error_code": error_code.value}
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        return {
            "total_errors": sum(self._error_counts.values()),
            "by_code": dict(self._error_counts),
            "recent_errors": self._get_recent_errors(10)
        }

    def _get_recent_errors(self, limit: int) -> list:
        """Get most recent errors across all codes."""
        all_errors = []
        for errors in self._errors.values():
            all_errors.extend(errors)
        all_errors.sort(key=lambda e: e["timestamp"], reverse=True)
        return all_errors[:limit]


# Global error tracker
error_tracker = ErrorTracker()


def _format_original(error: Optional[Exception]) -> Optional[str]:
    if error is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def create_error_response(
    error: AppException,
    request: Optional[Request] = None
) -> ErrorResponse:
    """Create a standardized error response."""
    error_id = str(uuid4())

    error_tracker.track(
        error_id=error_id,
        error_code=error.code,
        message=error.message,
        request_path=str(request.url) if request else None,
        stack_trace=_format_original(error.original_error)
    )

    return ErrorResponse(
        error_id=error_id,
        code=error.code.value,
        message=error.message,
        status_code=error.status_code,
        timestamp=_utcnow_iso(),
        path=str(request.url.path) if request else None,
        details=error.details,
        suggestion=error.suggestion
    )


def setup_error_handling(app):
    """Register exception handlers on a FastAPI app."""

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        error_response = create_error_response(exc, request)
        headers = None
        retry_after = getattr(exc, "retry_after_seconds", None)
        if retry_after is not None:
            headers = {"Retry-After": str(retry_after)}
        return JSONResponse(
            status_code=error_response.status_code,
            content=error_response.to_dict(),
            headers=headers
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error_response = ErrorResponse(
            error_id=str(uuid4()),
            code=f"HTTP_{exc.status_code}",
            message=str(exc.detail),
            status_code=exc.status_code,
            timestamp=_utcnow_iso(),
            path=str(request.url.path)
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response.to_dict(),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error_response = ErrorResponse(
            error_id=str(uuid4()),
            code=ErrorCode.VALIDATION_ERROR.value,
            message="Request validation failed",
            status_code=422,
            timestamp=_utcnow_iso(),
            path=str(request.url.path),
            details={"errors": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                for err in exc.errors()
            ]}
        )
        return JSONResponse(status_code=422, content=error_response.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        error_id = str(uuid4())
        logger.exception(f"Unhandled exception {error_id}")

        error_tracker.track(
            error_id=error_id,
            error_code=ErrorCode.INTERNAL_ERROR,
            message=str(exc),
            request_path=str(request.url),
            stack_trace=traceback.format_exc()
        )

        # Don't expose internal details in production
        is_debug = os.getenv("DEBUG", "false").lower() == "true"

        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "id": error_id,
                    "code": ErrorCode.INTERNAL_ERROR.value,
                    "message": str(exc) if is_debug else "Internal server error",
                    "timestamp": _utcnow_iso()
                }
            }
        )

    logger.info("Error handling configured")
