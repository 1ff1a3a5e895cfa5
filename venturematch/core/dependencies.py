"""
Shared service instances.

The API routers and the Celery workers resolve their collaborators through
these cached getters, so both see the same stores, cache and index within a
process. Tests replace them with ``app.dependency_overrides``.
"""
import os
import logging
from functools import lru_cache

from venturematch.adapters.memory_store import InMemoryMatchStore, InMemoryProfileStore
from venturematch.adapters.quota import UsageQuotaService
from venturematch.services.compatibility_service import CompatibilityScorer
from venturematch.services.recommendation_service import RecommendationService
from venturematch.services.search_index_service import SearchIndexService
from venturematch.utils.cache import create_cache

logger = logging.getLogger(__name__)


def get_operation_timeout() -> float:
    """Default per-request budget in seconds for ranking and search."""
    return float(os.getenv("DEFAULT_OPERATION_TIMEOUT", "10"))


@lru_cache()
def get_profile_store() -> InMemoryProfileStore:
    seed_path = os.getenv("PROFILE_SEED_PATH")
    if seed_path:
        return InMemoryProfileStore.load_json(seed_path)
    logger.info("PROFILE_SEED_PATH not set, starting with an empty profile store")
    return InMemoryProfileStore()


@lru_cache()
def get_match_store() -> InMemoryMatchStore:
    return InMemoryMatchStore()


@lru_cache()
def get_cache():
    return create_cache()


@lru_cache()
def get_scorer() -> CompatibilityScorer:
    return CompatibilityScorer()


@lru_cache()
def get_recommendation_service() -> RecommendationService:
    return RecommendationService(
        profile_store=get_profile_store(),
        match_store=get_match_store(),
        cache=get_cache(),
        scorer=get_scorer(),
    )


@lru_cache()
def get_search_service() -> SearchIndexService:
    return SearchIndexService(profile_store=get_profile_store(), cache=get_cache())


@lru_cache()
def get_quota_service() -> UsageQuotaService:
    # share the result cache's Redis connection when there is one
    redis_client = getattr(get_cache(), "client", None)
    return UsageQuotaService(redis_client=redis_client)
