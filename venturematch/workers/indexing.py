"""
Celery tasks for search index maintenance.
"""
import logging

from venturematch.core.celery import celery_app
from venturematch.core.dependencies import get_search_service
from venturematch.middleware.error_handling import IndexUnavailableError, NotFoundException

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name='reindex_profile')
def reindex_profile(self, profile_id: str):
    """
    Rebuild the index entry for a single profile.

    Returns:
        Dictionary with task status and token count
    """
    logger.info(f"Reindexing profile {profile_id}")
    try:
        entry = get_search_service().index_profile(profile_id)
    except NotFoundException:
        logger.warning(f"Profile {profile_id} not found, stale index entry removed")
        return {
            "success": False,
            "profile_id": profile_id,
            "message": "Profile not found"
        }

    return {
        "success": True,
        "profile_id": profile_id,
        "role": entry.role.value,
        "tokens": len(entry.tokens)
    }


@celery_app.task(bind=True, name='reindex_all_profiles', max_retries=3, default_retry_delay=30)
def reindex_all_profiles(self):
    """
    Rebuild the whole index from the profile store.

    Retried while the index backend is unreachable.
    """
    logger.info(f"Starting full reindex (task {self.request.id})")
    try:
        report = get_search_service().reindex_all()
    except IndexUnavailableError as e:
        logger.error(f"Full reindex failed, index unavailable: {e.message}")
        raise self.retry(exc=e)

    return {"success": True, **report.model_dump()}
