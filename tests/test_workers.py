"""
Unit tests for the index maintenance tasks.
"""
import pytest
from unittest.mock import Mock, patch

from conftest import make_funder
from venturematch.middleware.error_handling import IndexUnavailableError
from venturematch.schemas.profile import Role
from venturematch.services.search_index_service import SearchConfig, SearchIndexService
from venturematch.workers import indexing


@pytest.fixture
def search_service(profile_store, memory_cache):
    return SearchIndexService(profile_store, memory_cache, config=SearchConfig())


class TestReindexProfileTask:
    def test_indexes_profile(self, search_service):
        with patch.object(indexing, "get_search_service", return_value=search_service):
            result = indexing.reindex_profile("f3")
        assert result["success"] is True
        assert result["role"] == "funder"
        assert result["tokens"] > 0
        assert search_service.backend.get(Role.FUNDER, "f3") is not None

    def test_missing_profile(self, search_service, profile_store):
        search_service.index_profile("f2")
        profile_store.delete("f2")
        with patch.object(indexing, "get_search_service", return_value=search_service):
            result = indexing.reindex_profile("f2")
        assert result == {"success": False, "profile_id": "f2", "message": "Profile not found"}
        assert search_service.backend.get(Role.FUNDER, "f2") is None


class TestReindexAllTask:
    def test_rebuilds_everything(self, search_service, profile_store):
        profile_store.upsert(make_funder("f9"))
        with patch.object(indexing, "get_search_service", return_value=search_service):
            result = indexing.reindex_all_profiles()
        assert result["success"] is True
        assert result["indexed"] == 6
        assert result["failed"] == []

    def test_index_unavailable_is_retried(self):
        service = Mock()
        service.reindex_all.side_effect = IndexUnavailableError("redis down")
        with patch.object(indexing, "get_search_service", return_value=service):
            with pytest.raises(IndexUnavailableError):
                indexing.reindex_all_profiles()
