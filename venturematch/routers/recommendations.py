"""
Recommendation endpoints.

Per-tier quotas are enforced here, before any ranking work runs:
daily views for GET, a cooldown for refresh, and a daily super-like budget.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request

from venturematch.adapters.quota import (
    ACTION_RECOMMENDATIONS,
    ACTION_REFRESH,
    ACTION_SUPER_LIKE,
    UsageQuotaService,
)
from venturematch.core.dependencies import (
    get_operation_timeout,
    get_profile_store,
    get_quota_service,
    get_recommendation_service,
)
from venturematch.middleware.error_handling import (
    CooldownActiveException,
    ErrorCode,
    NotFoundException,
    QuotaExceededException,
    ValidationException,
)
from venturematch.middleware.rate_limit import limit_strict
from venturematch.routers.executor import run_with_timeout
from venturematch.schemas.recommendation import (
    RecommendationItem,
    RecommendationsResponse,
    RefreshRequest,
    SuperLikeRequest,
    SuperLikeResult,
)
from venturematch.services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations", tags=["Recommendations"])


def _load_subject(store, user_id: str):
    profile = store.get_profile(user_id)
    if profile is None:
        raise NotFoundException("Profile", user_id, code=ErrorCode.PROFILE_NOT_FOUND)
    return profile


def _to_response(user_id: str, candidates) -> RecommendationsResponse:
    items = [RecommendationItem.from_candidate(c) for c in candidates]
    return RecommendationsResponse(user_id=user_id, recommendations=items, total=len(items))


@router.get("", response_model=RecommendationsResponse)
async def get_recommendations(
    user_id: str = Query(..., min_length=1, description="Subject profile id"),
    limit: int = Query(10, ge=1, le=100),
    timeout: Optional[float] = Query(None, gt=0, le=120, description="Budget in seconds"),
    service: RecommendationService = Depends(get_recommendation_service),
    quota: UsageQuotaService = Depends(get_quota_service),
    store=Depends(get_profile_store),
):
    """Ranked opposite-role candidates for a user, best first."""
    subject = _load_subject(store, user_id)

    decision = quota.check_and_consume_quota(user_id, ACTION_RECOMMENDATIONS, subject.subscription_tier)
    if not decision.allowed:
        raise QuotaExceededException(ACTION_RECOMMENDATIONS, decision.retry_after_seconds, decision.limit)

    budget = timeout or get_operation_timeout()
    candidates = await run_with_timeout(
        service.recommend, user_id, limit, budget, timeout=budget, operation="recommend"
    )
    logger.info(f"Returning {len(candidates)} recommendations for user {user_id}")
    return _to_response(user_id, candidates)


@router.post("/refresh", response_model=RecommendationsResponse)
@limit_strict
async def refresh_recommendations(
    request: Request,
    payload: RefreshRequest,
    service: RecommendationService = Depends(get_recommendation_service),
    quota: UsageQuotaService = Depends(get_quota_service),
    store=Depends(get_profile_store),
):
    """Recompute recommendations, subject to the tier's refresh cooldown."""
    subject = _load_subject(store, payload.user_id)

    decision = quota.check_and_consume_quota(payload.user_id, ACTION_REFRESH, subject.subscription_tier)
    if not decision.allowed:
        raise CooldownActiveException(decision.retry_after_seconds)

    budget = get_operation_timeout()
    candidates = await run_with_timeout(
        service.refresh, payload.user_id, payload.limit, budget, timeout=budget, operation="refresh"
    )
    return _to_response(payload.user_id, candidates)


@router.post("/super-like", response_model=SuperLikeResult)
@limit_strict
async def super_like(
    request: Request,
    payload: SuperLikeRequest,
    service: RecommendationService = Depends(get_recommendation_service),
    quota: UsageQuotaService = Depends(get_quota_service),
    store=Depends(get_profile_store),
):
    """Send a boosted like. Mutual when the target already liked the sender."""
    if payload.user_id == payload.target_user_id:
        raise ValidationException("Cannot super-like your own profile", field="target_user_id")
    subject = _load_subject(store, payload.user_id)
    _load_subject(store, payload.target_user_id)

    decision = quota.check_and_consume_quota(payload.user_id, ACTION_SUPER_LIKE, subject.subscription_tier)
    if not decision.allowed:
        raise QuotaExceededException(ACTION_SUPER_LIKE, decision.retry_after_seconds, decision.limit)

    result = await run_with_timeout(
        service.super_like, payload.user_id, payload.target_user_id,
        timeout=get_operation_timeout(), operation="super_like"
    )
    result.remaining_super_likes = decision.remaining
    return result
