"""
Marketplace profile schemas.

A profile is a tagged union on ``role``: entrepreneurs and funders carry
disjoint attribute sets. Accessors at the bottom of this module dispatch on
the variant so scoring code never reads a field the role does not have.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Annotated, FrozenSet, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from venturematch.middleware.error_handling import InvalidProfileError


class Role(str, Enum):
    ENTREPRENEUR = "entrepreneur"
    FUNDER = "funder"

    @property
    def opposite(self) -> "Role":
        return Role.FUNDER if self is Role.ENTREPRENEUR else Role.ENTREPRENEUR


class VerificationLevel(str, Enum):
    """Ordered verification milestones, lowest first."""
    NONE = "None"
    BUSINESS_PLAN = "BusinessPlan"
    USE_CASE = "UseCase"
    DEMOGRAPHIC_ALIGNMENT = "DemographicAlignment"
    APP_UX_UI = "AppUXUI"
    FISCAL_ANALYSIS = "FiscalAnalysis"

    def rank(self) -> int:
        return _VERIFICATION_ORDER.index(self)

    def normalized(self) -> float:
        return self.rank() / (len(_VERIFICATION_ORDER) - 1)


_VERIFICATION_ORDER = list(VerificationLevel)


class SubscriptionTier(str, Enum):
    """Ordered subscription tiers, lowest first."""
    BASIC = "Basic"
    CHROME = "Chrome"
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"

    def rank(self) -> int:
        return list(SubscriptionTier).index(self)


class MatchStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    REJECTED = "rejected"
    NONE = "none"


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class InvestmentRange(BaseModel):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min > self.max:
            raise ValueError(f"investment range min ({self.min}) exceeds max ({self.max})")
        return self


class MatchOutcome(BaseModel):
    """One past match involving the profile."""
    counterpart_id: str
    status: MatchStatus
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)


class BaseProfile(BaseModel):
    """Attributes shared by both roles."""
    model_config = ConfigDict(use_enum_values=False, extra="ignore")

    id: str = Field(..., min_length=1)
    years_experience: Optional[float] = Field(None, ge=0)
    verification_level: VerificationLevel = VerificationLevel.NONE
    subscription_tier: SubscriptionTier = SubscriptionTier.BASIC
    location: Optional[GeoPoint] = None
    activity_count: int = Field(0, ge=0, description="Actions in the recent activity window")
    match_history: List[MatchOutcome] = Field(default_factory=list)
    email_verified: bool = False
    phone_verified: bool = False
    photo_url: Optional[str] = None


class EntrepreneurProfile(BaseProfile):
    role: Literal["entrepreneur"] = "entrepreneur"
    project_name: Optional[str] = None
    industries: List[str] = Field(default_factory=list)
    desired_investment_amount: Optional[float] = Field(None, ge=0)
    business_type: Optional[str] = None
    features: List[str] = Field(default_factory=list)


class FunderProfile(BaseProfile):
    role: Literal["funder"] = "funder"
    name: Optional[str] = None
    areas_of_interest: List[str] = Field(default_factory=list)
    investment_range: Optional[InvestmentRange] = None
    available_funds: Optional[float] = Field(None, ge=0)
    certifications: List[str] = Field(default_factory=list)


Profile = Annotated[Union[EntrepreneurProfile, FunderProfile], Field(discriminator="role")]

_profile_adapter = TypeAdapter(Profile)


def parse_profile(record: Mapping[str, Any]) -> Union[EntrepreneurProfile, FunderProfile]:
    """
    Build a profile variant from a raw record.

    Raises InvalidProfileError when identity fields are missing or the
    record cannot be validated.
    """
    if isinstance(record, (EntrepreneurProfile, FunderProfile)):
        return record
    if not record.get("id"):
        raise InvalidProfileError("Profile record has no id")
    if not record.get("role"):
        raise InvalidProfileError("Profile record has no role", profile_id=str(record.get("id")))
    try:
        return _profile_adapter.validate_python(dict(record))
    except ValidationError as e:
        raise InvalidProfileError(
            f"Profile record failed validation: {e.error_count()} error(s)",
            profile_id=str(record.get("id"))
        ) from e


def profile_role(profile) -> Optional[Role]:
    """Role of a profile, or None when it is absent or unknown."""
    raw = getattr(profile, "role", None)
    if raw is None:
        return None
    try:
        return Role(raw)
    except ValueError:
        return None


def ensure_identity(profile) -> Role:
    """Raise InvalidProfileError unless the profile has an id and a known role."""
    profile_id = getattr(profile, "id", None)
    if not profile_id:
        raise InvalidProfileError("Profile is missing its id")
    role = profile_role(profile)
    if role is None:
        raise InvalidProfileError("Profile is missing its role", profile_id=str(profile_id))
    return role


def interest_set(profile) -> FrozenSet[str]:
    """Industries for entrepreneurs, areas of interest for funders, casefolded."""
    if isinstance(profile, EntrepreneurProfile):
        items = profile.industries
    elif isinstance(profile, FunderProfile):
        items = profile.areas_of_interest
    else:
        return frozenset()
    return frozenset(i.strip().casefold() for i in items if i and i.strip())


def desired_amount(profile) -> Optional[float]:
    if isinstance(profile, EntrepreneurProfile):
        return profile.desired_investment_amount
    return None


def investment_range(profile) -> Optional[InvestmentRange]:
    if isinstance(profile, FunderProfile):
        return profile.investment_range
    return None


def dump_profile(profile) -> dict:
    """JSON-safe snapshot of a profile."""
    return profile.model_dump(mode="json")
