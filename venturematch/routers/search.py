"""
Profile search endpoints.

``filters`` and ``sort`` arrive as JSON strings in the query string, e.g.
``?filters={"industries":["fintech"]}&sort={"field":"years_experience","direction":"desc"}``.
"""
import json
import logging
from typing import Any, Optional
from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from venturematch.core.dependencies import get_operation_timeout, get_search_service
from venturematch.middleware.error_handling import AppException, ErrorCode
from venturematch.middleware.rate_limit import limit_search
from venturematch.routers.executor import run_with_timeout
from venturematch.schemas.profile import Role
from venturematch.schemas.search import SearchOptions, SearchResponse, SuggestionsResponse
from venturematch.services.search_index_service import SearchIndexService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


def _parse_json_param(name: str, raw: Optional[str]) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise AppException(
            ErrorCode.BAD_REQUEST,
            f"Invalid {name} format",
            details={"parameter": name, "reason": str(e)},
            suggestion=f"Send {name} as a JSON object"
        )


def build_search_options(filters: Optional[str], sort: Optional[str], page: int, limit: int, role: Role) -> SearchOptions:
    """Parse the JSON query parameters into SearchOptions; malformed input is a 400."""
    parsed_filters = _parse_json_param("filters", filters)
    parsed_sort = _parse_json_param("sort", sort)
    if parsed_filters is not None and not isinstance(parsed_filters, dict):
        raise AppException(ErrorCode.BAD_REQUEST, "Invalid filters format",
                           details={"parameter": "filters"}, suggestion="Send filters as a JSON object")
    try:
        return SearchOptions(
            filters=parsed_filters or {},
            sort=parsed_sort,
            page=page,
            limit=limit,
            role=role,
        )
    except ValidationError as e:
        raise AppException(
            ErrorCode.BAD_REQUEST,
            "Invalid search options",
            details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]}
        )


@router.get("", response_model=SearchResponse)
@limit_search
async def search_profiles(
    request: Request,
    query: str = Query("", description="Free-text query; every term must match"),
    filters: Optional[str] = Query(None, description="JSON object of field filters"),
    sort: Optional[str] = Query(None, description='JSON object {"field", "direction"}'),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Role = Query(Role.ENTREPRENEUR),
    timeout: Optional[float] = Query(None, gt=0, le=120),
    service: SearchIndexService = Depends(get_search_service),
):
    options = build_search_options(filters, sort, page, limit, role)
    budget = timeout or get_operation_timeout()
    result = await run_with_timeout(service.search, query, options, budget, timeout=budget, operation="search")
    return SearchResponse(query=query, **result.model_dump())


@router.get("/suggestions", response_model=SuggestionsResponse)
@limit_search
async def search_suggestions(
    request: Request,
    query: str = Query(""),
    role: Role = Query(Role.ENTREPRENEUR),
    service: SearchIndexService = Depends(get_search_service),
):
    """Type-ahead suggestions: the top few matches as short labels."""
    suggestions = await run_with_timeout(
        service.suggest, query, role, timeout=get_operation_timeout(), operation="suggest"
    )
    return SuggestionsResponse(query=query, suggestions=suggestions)
