"""
Search index maintenance endpoints.
"""
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from venturematch.core.dependencies import get_operation_timeout, get_search_service
from venturematch.middleware.auth import require_admin
from venturematch.middleware.error_handling import IndexUnavailableError
from venturematch.middleware.rate_limit import limit_strict
from venturematch.routers.executor import run_with_timeout
from venturematch.schemas.search import ReindexAllResponse, ReindexRequest, ReindexResponse
from venturematch.services.search_index_service import SearchIndexService
from venturematch.workers.indexing import reindex_all_profiles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/index", tags=["Search Index"])


@router.post("/reindex", response_model=ReindexResponse)
@limit_strict
async def reindex_profile(
    request: Request,
    payload: ReindexRequest,
    service: SearchIndexService = Depends(get_search_service),
):
    """Synchronously rebuild one profile's index entry."""
    entry = await run_with_timeout(
        service.index_profile, payload.profile_id,
        timeout=get_operation_timeout(), operation="reindex"
    )
    return ReindexResponse(profile_id=entry.profile_id, role=entry.role, tokens=len(entry.tokens))


@router.post("/reindex-all", response_model=ReindexAllResponse, status_code=202,
             dependencies=[Depends(require_admin)])
async def reindex_all():
    """Queue a full rebuild of the index. Admin only."""
    try:
        task = reindex_all_profiles.delay()
    except Exception as e:
        logger.error(f"Failed to queue full reindex: {e}")
        raise IndexUnavailableError("Could not queue the reindex job", original_error=e)
    logger.info(f"Queued full reindex as task {task.id}")
    return JSONResponse(
        status_code=202,
        content=ReindexAllResponse(task_id=task.id, status="queued").model_dump()
    )
