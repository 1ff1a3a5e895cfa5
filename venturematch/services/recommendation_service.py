"""
Recommendation ranking.

Builds the candidate pool for a user (opposite role, no prior match in
either direction), scores every candidate with the compatibility scorer,
adds ranking-only adjustments (historical success, activity, subscription
tier) and returns the best candidates with human-readable reasons.

The ranking score only orders results. Mutual-match decisions use the
plain compatibility score, which the tier bonus never touches.
"""
import os
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from venturematch.adapters.memory_store import MatchStore, ProfileStore
from venturematch.middleware.error_handling import ErrorCode, NotFoundException, ValidationException
from venturematch.schemas.profile import MatchStatus, SubscriptionTier, VerificationLevel, ensure_identity, profile_role
from venturematch.schemas.recommendation import MatchCandidate, SuperLikeResult
from venturematch.services.compatibility_service import (
    EXPERIENCE_ALIGNMENT,
    GEOGRAPHIC_ALIGNMENT,
    INDUSTRY_ALIGNMENT,
    INVESTMENT_ALIGNMENT,
    SCALE_MAX,
    CompatibilityScorer,
    validate_weights,
    weights_from_env,
)
from venturematch.utils.cache import make_cache_key
from venturematch.utils.deadline import Deadline
from venturematch.utils.logging_config import LogContext, log_performance

logger = logging.getLogger(__name__)

COMPATIBILITY = "compatibility"
HISTORICAL_SUCCESS = "historical_success"
ACTIVITY = "activity"
RANKING_FACTORS = (COMPATIBILITY, HISTORICAL_SUCCESS, ACTIVITY)

DEFAULT_RANKING_WEIGHTS = {
    COMPATIBILITY: 0.75,
    HISTORICAL_SUCCESS: 0.15,
    ACTIVITY: 0.10,
}

DEFAULT_TIER_BONUSES = {
    SubscriptionTier.BASIC: 0.0,
    SubscriptionTier.CHROME: 0.025,
    SubscriptionTier.BRONZE: 0.05,
    SubscriptionTier.SILVER: 0.10,
    SubscriptionTier.GOLD: 0.20,
    SubscriptionTier.PLATINUM: 0.30,
}


def validate_tier_bonuses(bonuses: Dict[SubscriptionTier, float]) -> Dict[SubscriptionTier, float]:
    """Bonuses must be non-negative and non-decreasing with tier."""
    ordered = [float(bonuses.get(tier, 0.0)) for tier in SubscriptionTier]
    if any(b < 0 for b in ordered):
        raise ValueError("Tier bonuses must be non-negative")
    if any(lower > higher for lower, higher in zip(ordered, ordered[1:])):
        raise ValueError("Tier bonuses must not decrease as the tier increases")
    return dict(zip(SubscriptionTier, ordered))


def _tier_bonuses_from_env() -> Dict[SubscriptionTier, float]:
    raw = os.getenv("TIER_BONUSES")
    if not raw:
        return dict(DEFAULT_TIER_BONUSES)
    try:
        overrides = {SubscriptionTier(k): float(v) for k, v in json.loads(raw).items()}
        return validate_tier_bonuses({**DEFAULT_TIER_BONUSES, **overrides})
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring invalid TIER_BONUSES: {e}")
        return dict(DEFAULT_TIER_BONUSES)


@dataclass
class RankingConfig:
    """Business-policy constants for ordering recommendations."""
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RANKING_WEIGHTS))
    tier_bonuses: Dict[SubscriptionTier, float] = field(default_factory=lambda: dict(DEFAULT_TIER_BONUSES))
    active_user_baseline: int = 30          # actions per window for a "very active" user
    neutral_success_rate: float = 0.5       # for candidates with no match history
    reason_threshold: float = 0.7
    super_like_boost: float = 1.2
    cache_ttl_seconds: int = 3600
    max_cached: int = 100

    @classmethod
    def from_env(cls) -> 'RankingConfig':
        return cls(
            weights=weights_from_env("RANKING_WEIGHTS", DEFAULT_RANKING_WEIGHTS, RANKING_FACTORS),
            tier_bonuses=_tier_bonuses_from_env(),
            active_user_baseline=int(os.getenv("ACTIVE_USER_BASELINE", "30")),
            super_like_boost=float(os.getenv("SUPER_LIKE_BOOST", "1.2")),
            cache_ttl_seconds=int(os.getenv("RECOMMENDATION_CACHE_TTL", "3600")),
        )


@dataclass
class _ReasonContext:
    subject: object
    candidate: object
    factors: Dict[str, Optional[float]]
    historical_success: float
    activity: float
    threshold: float

    def above(self, value: Optional[float]) -> bool:
        return value is not None and value > self.threshold


# Evaluated in this order; order only affects presentation.
REASON_RULES: Tuple[Tuple[str, Callable[[_ReasonContext], bool]], ...] = (
    ("Strong industry alignment", lambda ctx: ctx.above(ctx.factors.get(INDUSTRY_ALIGNMENT))),
    ("Ideal investment match", lambda ctx: ctx.above(ctx.factors.get(INVESTMENT_ALIGNMENT))),
    ("Similar experience level", lambda ctx: ctx.above(ctx.factors.get(EXPERIENCE_ALIGNMENT))),
    ("Nearby location", lambda ctx: (
        ctx.subject.location is not None
        and ctx.candidate.location is not None
        and ctx.above(ctx.factors.get(GEOGRAPHIC_ALIGNMENT))
    )),
    ("Both profiles verified", lambda ctx: (
        ctx.subject.verification_level != VerificationLevel.NONE
        and ctx.candidate.verification_level != VerificationLevel.NONE
    )),
    ("High success rate with matches", lambda ctx: ctx.above(ctx.historical_success)),
    ("Very active on platform", lambda ctx: ctx.above(ctx.activity)),
)


class RecommendationService:
    """Ranks opposite-role candidates for a user."""

    def __init__(
        self,
        profile_store: ProfileStore,
        match_store: MatchStore,
        cache,
        scorer: Optional[CompatibilityScorer] = None,
        config: Optional[RankingConfig] = None,
    ):
        self.profile_store = profile_store
        self.match_store = match_store
        self.cache = cache
        self.scorer = scorer or CompatibilityScorer()
        self.config = config or RankingConfig.from_env()
        self.config.weights = validate_weights(self.config.weights, RANKING_FACTORS)
        self.config.tier_bonuses = validate_tier_bonuses(self.config.tier_bonuses)

    @staticmethod
    def cache_key(user_id: str) -> str:
        return make_cache_key("recommendations", user_id=user_id)

    @log_performance("recommend")
    def recommend(self, user_id: str, limit: int = 10, timeout: Optional[float] = None) -> List[MatchCandidate]:
        """
        Ranked recommendations for ``user_id``, best first.

        The full ranked list is cached; ``limit`` slices it. On timeout
        nothing is written to the cache.
        """
        if limit < 1:
            raise ValidationException("limit must be at least 1", field="limit")

        key = self.cache_key(user_id)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Recommendation cache hit for user {user_id}")
            # the match store may have changed since the list was cached
            self._load(user_id)
            fresh = [
                MatchCandidate.model_validate(item) for item in cached
                if not self._already_related(user_id, item["user_id"])
            ]
            return fresh[:limit]

        deadline = Deadline(timeout, "recommend")
        with LogContext(operation="recommend", subject_id=user_id):
            ranked = self._rank(user_id, deadline)

        deadline.check()
        self.cache.set(
            key,
            [c.model_dump(mode="json") for c in ranked[:self.config.max_cached]],
            self.config.cache_ttl_seconds
        )
        return ranked[:limit]

    def refresh(self, user_id: str, limit: int = 10, timeout: Optional[float] = None) -> List[MatchCandidate]:
        """Drop the cached ranking for ``user_id`` and recompute it."""
        self.invalidate(user_id)
        return self.recommend(user_id, limit=limit, timeout=timeout)

    def invalidate(self, user_id: str) -> None:
        self.cache.delete(self.cache_key(user_id))

    def _load(self, profile_id: str):
        profile = self.profile_store.get_profile(profile_id)
        if profile is None:
            raise NotFoundException("Profile", profile_id, code=ErrorCode.PROFILE_NOT_FOUND)
        return profile

    def candidate_pool(self, subject) -> List:
        """Opposite-role profiles with no match record with ``subject`` in either direction."""
        role = ensure_identity(subject)
        target_role = role.opposite
        pool = self.profile_store.query_profiles(
            lambda p: profile_role(p) == target_role and p.id != subject.id
        )
        return [c for c in pool if not self._already_related(subject.id, c.id)]

    def _already_related(self, user_id: str, candidate_id: str) -> bool:
        return (
            self.match_store.get_match_status(user_id, candidate_id) != MatchStatus.NONE
            or self.match_store.get_match_status(candidate_id, user_id) != MatchStatus.NONE
        )

    def _rank(self, user_id: str, deadline: Deadline) -> List[MatchCandidate]:
        subject = self._load(user_id)
        pool = self.candidate_pool(subject)
        if not pool:
            logger.info(f"No candidates available for user {user_id}")
            return []

        candidates = []
        for candidate in pool:
            deadline.check()
            candidates.append(self._score_candidate(subject, candidate))

        candidates.sort(key=lambda c: (-c.score, c.user_id))
        logger.info(f"Ranked {len(candidates)} candidates for user {user_id}")
        return candidates

    def historical_success(self, profile) -> float:
        """Share of the profile's past matches that became mutual."""
        history = profile.match_history
        if not history:
            return self.config.neutral_success_rate
        matched = sum(1 for outcome in history if outcome.status == MatchStatus.MATCHED)
        return matched / len(history)

    def activity_score(self, profile) -> float:
        baseline = self.config.active_user_baseline
        if baseline <= 0:
            return 0.0
        return min(1.0, profile.activity_count / baseline)

    def tier_multiplier(self, tier: SubscriptionTier) -> float:
        return 1.0 + self.config.tier_bonuses.get(SubscriptionTier(tier), 0.0)

    def _score_candidate(self, subject, candidate) -> MatchCandidate:
        compatibility = self.scorer.score(subject, candidate)
        history = self.historical_success(candidate)
        activity = self.activity_score(candidate)

        weights = self.config.weights
        base = (
            weights[COMPATIBILITY] * compatibility.total
            + weights[HISTORICAL_SUCCESS] * history
            + weights[ACTIVITY] * activity
        ) / sum(weights.values())
        ranking_score = base * self.tier_multiplier(candidate.subscription_tier)

        context = _ReasonContext(
            subject=subject,
            candidate=candidate,
            factors=compatibility.factors,
            historical_success=history,
            activity=activity,
            threshold=self.config.reason_threshold,
        )
        reasons = [label for label, rule in REASON_RULES if rule(context)]

        return MatchCandidate(
            user_id=candidate.id,
            role=profile_role(candidate),
            score=ranking_score,
            compatibility=compatibility.total,
            factors=compatibility.factors,
            historical_success=history,
            activity=activity,
            subscription_tier=candidate.subscription_tier,
            reasons=reasons,
        )

    @log_performance("super_like")
    def super_like(self, user_id: str, target_user_id: str) -> SuperLikeResult:
        """
        Record a boosted pending like from ``user_id`` to ``target_user_id``.

        Quota is enforced by the caller before this runs. If the target
        already has a pending like toward the user, both sides become matched.
        """
        if user_id == target_user_id:
            raise ValidationException("Cannot super-like your own profile", field="target_user_id")

        subject = self._load(user_id)
        target = self._load(target_user_id)

        compatibility = self.scorer.score(subject, target).total
        boosted = min(SCALE_MAX, compatibility * self.config.super_like_boost)

        reverse_status = self.match_store.get_match_status(target_user_id, user_id)
        if reverse_status == MatchStatus.PENDING:
            status = MatchStatus.MATCHED
            self.match_store.record_match(target_user_id, user_id, MatchStatus.MATCHED)
        else:
            status = MatchStatus.PENDING
        self.match_store.record_match(user_id, target_user_id, status, compatibility=boosted, super_like=True)

        self.invalidate(user_id)
        self.invalidate(target_user_id)

        logger.info(f"Super-like {user_id} -> {target_user_id}: status={status.value}")
        return SuperLikeResult(
            user_id=user_id,
            target_user_id=target_user_id,
            compatibility=boosted,
            status=status,
            is_mutual=status == MatchStatus.MATCHED,
        )
