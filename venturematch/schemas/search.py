"""
Search and index-maintenance schemas.
"""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from venturematch.schemas.profile import Role

RANGE_KEYS = {"min", "max"}


class SortSpec(BaseModel):
    field: str = Field(..., min_length=1, description="Dotted path of the field to sort by")
    direction: Literal["asc", "desc"] = "asc"


class SearchOptions(BaseModel):
    """
    Filters, sort and paging for a search.

    Filter values:
      - list: any-of containment
      - {"min": x, "max": y}: inclusive numeric range, either bound optional
      - scalar: exact match, strings compared case-insensitively
    """
    filters: Dict[str, Any] = Field(default_factory=dict)
    sort: Optional[SortSpec] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)
    role: Role = Role.ENTREPRENEUR

    @field_validator("filters")
    @classmethod
    def _check_filters(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for path, condition in v.items():
            if not path or not path.strip():
                raise ValueError("Filter field names must be non-empty")
            if isinstance(condition, dict):
                unknown = set(condition) - RANGE_KEYS
                if unknown or not condition:
                    raise ValueError(f"Range filter on '{path}' must use only 'min' and 'max'")
                for bound in condition.values():
                    if bound is not None and (isinstance(bound, bool) or not isinstance(bound, (int, float))):
                        raise ValueError(f"Range bounds on '{path}' must be numbers")
        return v


class SearchPage(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list, description="Profile snapshots")
    total: int = Field(0, description="Number of matches before pagination")
    page: int
    limit: int
    role: Role
    degraded: bool = Field(False, description="True when served from a direct store scan")


class SearchResponse(SearchPage):
    success: bool = True
    query: str = ""


class Suggestion(BaseModel):
    id: str
    text: str
    role: Role
    industry: Optional[str] = None
    available_funds: Optional[float] = None


class SuggestionsResponse(BaseModel):
    success: bool = True
    query: str
    suggestions: List[Suggestion]


class ReindexRequest(BaseModel):
    profile_id: str = Field(..., min_length=1)


class ReindexResponse(BaseModel):
    success: bool = True
    profile_id: str
    role: Role
    tokens: int


class ReindexReport(BaseModel):
    indexed: int = 0
    removed: int = 0
    failed: List[str] = Field(default_factory=list)


class ReindexAllResponse(BaseModel):
    success: bool = True
    task_id: Optional[str] = None
    status: str = "queued"
