"""
Health check routes.
"""
import logging
from fastapi import APIRouter, Depends

from venturematch.core.dependencies import get_cache, get_search_service
from venturematch.middleware.error_handling import error_tracker
from venturematch.schemas.common import HealthResponse

router = APIRouter()
logger = logging.getLogger(__name__)


def _health_data(cache, search_service) -> dict:
    return {
        "status": "healthy",
        "cache": cache.get_stats(),
        "index": search_service.get_stats(),
        "errors": error_tracker.get_stats(),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(cache=Depends(get_cache), search_service=Depends(get_search_service)):
    """Health check endpoint at /health."""
    return HealthResponse(success=True, data=_health_data(cache, search_service), message="OK")


@router.get("/api/v1/health", response_model=HealthResponse)
async def health_check_v1(cache=Depends(get_cache), search_service=Depends(get_search_service)):
    """Health check endpoint at /api/v1/health."""
    return HealthResponse(success=True, data=_health_data(cache, search_service), message="OK")
