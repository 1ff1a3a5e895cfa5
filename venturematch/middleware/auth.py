"""
Authentication for the matching API.

Every non-excluded request must carry X-API-KEY. Admin-only routes
additionally require X-ADMIN-KEY, checked by the ``require_admin``
dependency.
"""
import os
import hmac
import logging
from typing import Optional

from fastapi import Header, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from venturematch.middleware.error_handling import AppException, ErrorCode, create_error_response

logger = logging.getLogger(__name__)


def _environment() -> str:
    return os.getenv('ENVIRONMENT', 'development').lower()


def _error(request: Request, code: ErrorCode, message: str) -> JSONResponse:
    error_response = create_error_response(AppException(code, message), request)
    return JSONResponse(status_code=error_response.status_code, content=error_response.to_dict())


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Validate the X-API-KEY header."""

    def __init__(self, app, exclude_paths: Optional[list] = None):
        super().__init__(app)
        self.api_key = os.getenv('API_KEY')
        self.environment = _environment()
        self.exclude_paths = exclude_paths or ["/health", "/api/v1/health", "/docs", "/redoc", "/openapi.json"]

        if self.environment == 'production' and not self.api_key:
            raise ValueError("API_KEY environment variable is REQUIRED in production")

    def _should_bypass_auth(self) -> bool:
        """AUTH_BYPASS is honoured outside production only."""
        bypass = os.getenv("AUTH_BYPASS", "").lower() == "true"
        if not bypass:
            return False
        return self.environment != "production"

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(path) for path in self.exclude_paths):
            return await call_next(request)

        if self._should_bypass_auth():
            return await call_next(request)

        if not self.api_key:
            if self.environment == 'production':
                logger.error("API_KEY not configured in production - blocking request")
                return _error(request, ErrorCode.INTERNAL_ERROR,
                              "Server misconfiguration: authentication not properly configured")
            logger.warning("No API_KEY configured - allowing request (development mode only)")
            return await call_next(request)

        api_key = request.headers.get("X-API-KEY")
        if not api_key:
            return _error(request, ErrorCode.UNAUTHORIZED, "X-API-KEY header is required")

        if not hmac.compare_digest(api_key, self.api_key):
            return _error(request, ErrorCode.FORBIDDEN, "Invalid API key")

        return await call_next(request)


async def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-ADMIN-KEY")) -> None:
    """
    Dependency for admin-only routes.

    Fails closed: with no ADMIN_API_KEY configured every request is refused.
    """
    admin_key = os.getenv("ADMIN_API_KEY")
    if not admin_key:
        logger.warning("ADMIN_API_KEY not configured - refusing admin request")
        raise AppException(ErrorCode.FORBIDDEN, "Admin access is not configured")
    if not x_admin_key:
        raise AppException(ErrorCode.UNAUTHORIZED, "X-ADMIN-KEY header is required")
    if not hmac.compare_digest(x_admin_key, admin_key):
        raise AppException(ErrorCode.FORBIDDEN, "Invalid admin key")
