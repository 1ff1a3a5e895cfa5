"""
HTTP rate limiting using slowapi.

Limits are per API key when one is sent, per client IP otherwise. This is
transport-level abuse protection; per-tier product quotas live in
``venturematch.adapters.quota``.
"""
import os
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse

from venturematch.middleware.error_handling import ErrorCode

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv('RATE_LIMIT_ENABLED', 'true').lower() == 'true'
RATE_LIMIT_DEFAULT = os.getenv('RATE_LIMIT_DEFAULT', '100/minute')
RATE_LIMIT_SEARCH = os.getenv('RATE_LIMIT_SEARCH', '200/minute')
RATE_LIMIT_STRICT = os.getenv('RATE_LIMIT_STRICT', '30/minute')  # recompute-heavy endpoints

RATE_LIMIT_STORAGE_URL = os.getenv('RATE_LIMIT_STORAGE_URL')


def get_api_key_or_ip(request: Request) -> str:
    api_key = request.headers.get('X-API-KEY')
    if api_key:
        return f"apikey:{api_key[:16]}"
    return get_remote_address(request)


def create_limiter() -> Limiter:
    """
    Build the limiter. Uses shared storage when RATE_LIMIT_STORAGE_URL is
    set, otherwise per-process memory.
    """
    if RATE_LIMIT_STORAGE_URL and RATE_LIMIT_ENABLED:
        try:
            return Limiter(
                key_func=get_api_key_or_ip,
                default_limits=[RATE_LIMIT_DEFAULT],
                storage_uri=RATE_LIMIT_STORAGE_URL,
                strategy="fixed-window",
                enabled=True
            )
        except Exception as e:
            logger.warning(f"Failed to configure rate limit storage: {e}. Using in-memory storage.")

    return Limiter(
        key_func=get_api_key_or_ip,
        default_limits=[RATE_LIMIT_DEFAULT],
        strategy="fixed-window",
        enabled=RATE_LIMIT_ENABLED
    )


limiter = create_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {get_api_key_or_ip(request)}: {exc.detail}")

    retry_after = getattr(exc, 'retry_after', 60)

    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": ErrorCode.RATE_LIMITED.value,
                "message": "Rate limit exceeded. Please slow down your requests.",
                "path": request.url.path,
                "details": {"limit": str(exc.detail), "retry_after_seconds": retry_after}
            }
        },
        headers={"Retry-After": str(retry_after)}
    )


def limit_search(func):
    """Higher limit for search and suggestions."""
    return limiter.limit(RATE_LIMIT_SEARCH)(func)


def limit_strict(func):
    """Strict limit for refresh, super-like and reindex."""
    return limiter.limit(RATE_LIMIT_STRICT)(func)
