"""
Recommendation request/response schemas.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from venturematch.schemas.profile import MatchStatus, Role, SubscriptionTier


class MatchCandidate(BaseModel):
    """A scored candidate for one subject. Recomputed per request, never persisted."""
    user_id: str = Field(..., description="Candidate profile id")
    role: Role
    score: float = Field(..., ge=0, description="Ranking score, including business-policy adjustments")
    compatibility: float = Field(..., ge=0, le=1, description="Compatibility score on the [0, 1] scale")
    factors: Dict[str, Optional[float]] = Field(default_factory=dict)
    historical_success: float = Field(..., ge=0, le=1)
    activity: float = Field(..., ge=0, le=1)
    subscription_tier: SubscriptionTier
    reasons: List[str] = Field(default_factory=list)


class RecommendationItem(MatchCandidate):
    match_percentage: int = Field(..., ge=0, le=100, description="Compatibility as a 0-100 percentage")

    @classmethod
    def from_candidate(cls, candidate: MatchCandidate) -> "RecommendationItem":
        return cls(
            **candidate.model_dump(),
            match_percentage=int(round(candidate.compatibility * 100))
        )


class RecommendationsResponse(BaseModel):
    success: bool = True
    user_id: str
    recommendations: List[RecommendationItem]
    total: int


class RefreshRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=100)


class SuperLikeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    target_user_id: str = Field(..., min_length=1)


class SuperLikeResult(BaseModel):
    user_id: str
    target_user_id: str
    compatibility: float = Field(..., ge=0, le=1)
    status: MatchStatus
    is_mutual: bool
    remaining_super_likes: Optional[int] = None
