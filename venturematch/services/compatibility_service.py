"""
Compatibility scoring between two marketplace profiles.

Six factors are computed independently and fused with a weighted sum:

    industry_alignment    |A ∩ B| / max(|A|, |B|)
    investment_alignment  position inside the funder range, or decaying
                          penalty outside it (entrepreneur/funder pairs only)
    experience_alignment  1 - gap / decay, decay 15 cross-role, 5 same-role
    geographic_alignment  1 - distance / max_distance, 1.0 when unknown
    verification_score    mean normalized verification rank
    safety_score          min(1 - risk(a), 1 - risk(b))

Factors that cannot be computed for a pair are reported as None and their
weight is dropped, so the remaining weights are renormalized. The total is
always on the [0, 1] scale.
"""
import os
import json
import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from venturematch.schemas.profile import (
    EntrepreneurProfile,
    FunderProfile,
    desired_amount,
    ensure_identity,
    interest_set,
    investment_range,
)

logger = logging.getLogger(__name__)

INDUSTRY_ALIGNMENT = "industry_alignment"
INVESTMENT_ALIGNMENT = "investment_alignment"
EXPERIENCE_ALIGNMENT = "experience_alignment"
GEOGRAPHIC_ALIGNMENT = "geographic_alignment"
VERIFICATION_SCORE = "verification_score"
SAFETY_SCORE = "safety_score"

FACTOR_NAMES = (
    INDUSTRY_ALIGNMENT,
    INVESTMENT_ALIGNMENT,
    EXPERIENCE_ALIGNMENT,
    GEOGRAPHIC_ALIGNMENT,
    VERIFICATION_SCORE,
    SAFETY_SCORE,
)

DEFAULT_WEIGHTS = {
    INDUSTRY_ALIGNMENT: 0.25,
    INVESTMENT_ALIGNMENT: 0.25,
    EXPERIENCE_ALIGNMENT: 0.15,
    GEOGRAPHIC_ALIGNMENT: 0.10,
    VERIFICATION_SCORE: 0.15,
    SAFETY_SCORE: 0.10,
}

SCALE_MAX = 1.0
EARTH_RADIUS_M = 6371008.8


def validate_weights(weights: Dict[str, float], names=FACTOR_NAMES) -> Dict[str, float]:
    """Fill missing factors with 0 and reject negative or all-zero weights."""
    unknown = set(weights) - set(names)
    if unknown:
        raise ValueError(f"Unknown weight keys: {sorted(unknown)}")
    merged = {name: float(weights.get(name, 0.0)) for name in names}
    if any(w < 0 for w in merged.values()):
        raise ValueError("Weights must be non-negative")
    if sum(merged.values()) <= 0:
        raise ValueError("At least one weight must be positive")
    return merged


def weights_from_env(var_name: str, default: Dict[str, float], names=FACTOR_NAMES) -> Dict[str, float]:
    raw = os.getenv(var_name)
    if not raw:
        return dict(default)
    try:
        return validate_weights({**default, **json.loads(raw)}, names)
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring invalid {var_name}: {e}")
        return dict(default)


@dataclass
class ScoringConfig:
    """Policy constants for the compatibility factors."""
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    cross_role_experience_decay: float = 15.0
    same_role_experience_decay: float = 5.0
    max_distance_m: float = 1_000_000.0
    # fraud-risk heuristic
    incomplete_profile_penalty: float = 0.3
    unverified_email_penalty: float = 0.2
    unverified_phone_penalty: float = 0.2
    suspicious_activity_penalty: float = 0.3
    suspicious_matches_per_hour: float = 20.0
    activity_window_hours: int = 24

    @classmethod
    def from_env(cls) -> 'ScoringConfig':
        return cls(
            weights=weights_from_env("COMPATIBILITY_WEIGHTS", DEFAULT_WEIGHTS),
            max_distance_m=float(os.getenv("MAX_DISTANCE_METERS", "1000000")),
            suspicious_matches_per_hour=float(os.getenv("SUSPICIOUS_MATCH_RATE", "20")),
        )


@dataclass
class CompatibilityResult:
    total: float
    factors: Dict[str, Optional[float]]

    def to_dict(self) -> dict:
        return {"total": self.total, "factors": dict(self.factors)}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def haversine_m(a, b) -> float:
    """Great-circle distance in meters between two GeoPoints."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


class CompatibilityScorer:
    """Weighted multi-factor compatibility between two profiles."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        config: Optional[ScoringConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or ScoringConfig.from_env()
        self.weights = validate_weights(weights if weights is not None else self.config.weights)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def score(self, subject, candidate) -> CompatibilityResult:
        """
        Score ``subject`` against ``candidate``.

        Raises InvalidProfileError if either profile lacks an id or role.
        """
        subject_role = ensure_identity(subject)
        candidate_role = ensure_identity(candidate)
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        factors = {
            INDUSTRY_ALIGNMENT: self.industry_alignment(subject, candidate),
            INVESTMENT_ALIGNMENT: self.investment_alignment(subject, candidate),
            EXPERIENCE_ALIGNMENT: self.experience_alignment(subject, candidate, subject_role != candidate_role),
            GEOGRAPHIC_ALIGNMENT: self.geographic_alignment(subject, candidate),
            VERIFICATION_SCORE: self.verification_score(subject, candidate),
            SAFETY_SCORE: self.safety_score(subject, candidate, now),
        }
        return CompatibilityResult(total=self._combine(factors), factors=factors)

    def _combine(self, factors: Dict[str, Optional[float]]) -> float:
        applicable = {name: value for name, value in factors.items() if value is not None}
        weight_sum = sum(self.weights[name] for name in applicable)
        if weight_sum <= 0:
            return 0.0
        total = sum(self.weights[name] * value for name, value in applicable.items()) / weight_sum
        return _clamp(total, 0.0, SCALE_MAX)

    @staticmethod
    def industry_alignment(a, b) -> float:
        interests_a = interest_set(a)
        interests_b = interest_set(b)
        if not interests_a or not interests_b:
            return 0.0
        return len(interests_a & interests_b) / max(len(interests_a), len(interests_b))

    @staticmethod
    def investment_alignment(a, b) -> Optional[float]:
        if isinstance(a, EntrepreneurProfile) and isinstance(b, FunderProfile):
            entrepreneur, funder = a, b
        elif isinstance(a, FunderProfile) and isinstance(b, EntrepreneurProfile):
            entrepreneur, funder = b, a
        else:
            return None

        amount = desired_amount(entrepreneur)
        bounds = investment_range(funder)
        if amount is None or bounds is None:
            return None

        if bounds.min <= amount <= bounds.max:
            span = bounds.max - bounds.min
            if span == 0:
                return 1.0
            return _clamp(1 - (bounds.max - amount) / span)

        if amount < bounds.min:
            overshoot, range_bound = bounds.min - amount, bounds.min
        else:
            overshoot, range_bound = amount - bounds.max, bounds.max
        if range_bound <= 0:
            return 0.0
        return max(0.0, 1 - overshoot / range_bound)

    def experience_alignment(self, a, b, cross_role: bool) -> Optional[float]:
        if a.years_experience is None or b.years_experience is None:
            return None
        decay = self.config.cross_role_experience_decay if cross_role else self.config.same_role_experience_decay
        return max(0.0, 1 - abs(a.years_experience - b.years_experience) / decay)

    def geographic_alignment(self, a, b) -> float:
        if a.location is None or b.location is None:
            return 1.0
        distance = haversine_m(a.location, b.location)
        return max(0.0, 1 - distance / self.config.max_distance_m)

    @staticmethod
    def verification_score(a, b) -> float:
        return (a.verification_level.normalized() + b.verification_level.normalized()) / 2

    def safety_score(self, a, b, now: datetime) -> float:
        return min(1 - self.fraud_risk(a, now), 1 - self.fraud_risk(b, now))

    def fraud_risk(self, profile, now: datetime) -> float:
        cfg = self.config
        risk = cfg.incomplete_profile_penalty * self._missing_required_fraction(profile)
        if not profile.email_verified:
            risk += cfg.unverified_email_penalty
        if not profile.phone_verified:
            risk += cfg.unverified_phone_penalty
        risk += cfg.suspicious_activity_penalty * self._suspicious_activity(profile, now)
        return _clamp(risk)

    @staticmethod
    def _missing_required_fraction(profile) -> float:
        required = (
            bool(profile.photo_url),
            bool(interest_set(profile)),
            profile.years_experience is not None,
        )
        return required.count(False) / len(required)

    def _suspicious_activity(self, profile, now: datetime) -> float:
        window = timedelta(hours=self.config.activity_window_hours)
        recent = sum(1 for outcome in profile.match_history if now - outcome.created_at <= window)
        hourly_rate = recent / self.config.activity_window_hours
        return min(1.0, hourly_rate / self.config.suspicious_matches_per_hour)
