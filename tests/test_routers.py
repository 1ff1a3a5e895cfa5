"""
Unit tests for FastAPI routers.
Tests endpoint behavior against in-memory services.
"""
import pytest
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
import sys
import os

API_HEADERS = {"X-API-KEY": "test-api-key"}

APP_ENV = {
    'APP_NAME': 'Test',
    'APP_VERSION': '1.0.0',
    'CORS_ORIGINS': '["*"]',
    'ALLOWED_HOSTS': '["*"]',
    'API_KEY': 'test-api-key',
    'ADMIN_API_KEY': 'test-admin-key',
    'ENVIRONMENT': 'test',
    'RATE_LIMIT_ENABLED': 'false',
}


def get_fresh_app():
    """Get a fresh FastAPI app instance with reloaded modules."""
    # Clear cached app modules to ensure fresh import with new env vars
    modules_to_clear = [key for key in sys.modules.keys()
                        if key.startswith('venturematch.')]
    for mod in modules_to_clear:
        del sys.modules[mod]

    from venturematch.main import app
    return app


@pytest.fixture
def api(profiles, fixed_clock):
    """
    Client wired to in-memory services, with the search index built.

    Yields (client, services) where services exposes the store, match store,
    cache and the two services so tests can inspect side effects.
    """
    with patch.dict(os.environ, APP_ENV):
        app = get_fresh_app()
        # Build collaborators from the freshly imported modules so their
        # exceptions match the handlers registered on this app
        from venturematch.core import dependencies
        from venturematch.adapters.memory_store import InMemoryMatchStore, InMemoryProfileStore
        from venturematch.adapters.quota import QuotaConfig, UsageQuotaService
        from venturematch.schemas.profile import parse_profile
        from venturematch.services.compatibility_service import CompatibilityScorer, ScoringConfig
        from venturematch.services.recommendation_service import RankingConfig, RecommendationService
        from venturematch.services.search_index_service import SearchConfig, SearchIndexService
        from venturematch.utils.cache import MemoryCache

        scorer = CompatibilityScorer(config=ScoringConfig(), clock=fixed_clock)
        store = InMemoryProfileStore([parse_profile(p.model_dump(mode="json")) for p in profiles])
        matches = InMemoryMatchStore()
        cache = MemoryCache(default_ttl=300)
        recommendations = RecommendationService(store, matches, cache, scorer=scorer, config=RankingConfig())
        search = SearchIndexService(store, cache, config=SearchConfig())
        search.reindex_all()
        quota = UsageQuotaService(config=QuotaConfig())

        app.dependency_overrides[dependencies.get_profile_store] = lambda: store
        app.dependency_overrides[dependencies.get_match_store] = lambda: matches
        app.dependency_overrides[dependencies.get_cache] = lambda: cache
        app.dependency_overrides[dependencies.get_recommendation_service] = lambda: recommendations
        app.dependency_overrides[dependencies.get_search_service] = lambda: search
        app.dependency_overrides[dependencies.get_quota_service] = lambda: quota

        services = Mock(store=store, matches=matches, cache=cache,
                        recommendations=recommendations, search=search)
        yield TestClient(app), services
        app.dependency_overrides.clear()


class TestHealthRouter:
    def test_health_check(self, api):
        client, _ = api
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["status"] == "healthy"
        assert data["data"]["index"]["backend"] == "memory"

    def test_health_needs_no_api_key(self, api):
        client, _ = api
        assert client.get("/api/v1/health").status_code == 200


class TestAuthentication:
    def test_missing_api_key(self, api):
        client, _ = api
        response = client.get("/api/v1/recommendations", params={"user_id": "e1"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E1003"

    def test_wrong_api_key(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/recommendations", params={"user_id": "e1"},
            headers={"X-API-KEY": "nope"}
        )
        assert response.status_code == 403


class TestRecommendationsRouter:
    def test_get_recommendations(self, api):
        client, _ = api
        response = client.get("/api/v1/recommendations", params={"user_id": "e1"}, headers=API_HEADERS)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        first = data["recommendations"][0]
        assert first["match_percentage"] == round(first["compatibility"] * 100)
        assert {r["role"] for r in data["recommendations"]} == {"funder"}

    def test_limit(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/recommendations", params={"user_id": "e1", "limit": 1}, headers=API_HEADERS
        )
        assert response.json()["total"] == 1

    def test_unknown_user(self, api):
        client, _ = api
        response = client.get("/api/v1/recommendations", params={"user_id": "ghost"}, headers=API_HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E2001"

    def test_missing_user_id(self, api):
        client, _ = api
        response = client.get("/api/v1/recommendations", headers=API_HEADERS)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "E1001"

    def test_daily_quota(self, api):
        client, _ = api
        for _ in range(5):
            ok = client.get("/api/v1/recommendations", params={"user_id": "e1"}, headers=API_HEADERS)
            assert ok.status_code == 200
        response = client.get("/api/v1/recommendations", params={"user_id": "e1"}, headers=API_HEADERS)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "E3001"
        assert int(response.headers["Retry-After"]) > 0

    def test_refresh_cooldown(self, api):
        client, _ = api
        first = client.post("/api/v1/recommendations/refresh", json={"user_id": "e1"}, headers=API_HEADERS)
        assert first.status_code == 200
        second = client.post("/api/v1/recommendations/refresh", json={"user_id": "e1"}, headers=API_HEADERS)
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "E3002"
        assert "Retry-After" in second.headers

    def test_super_like(self, api):
        client, services = api
        response = client.post(
            "/api/v1/recommendations/super-like",
            json={"user_id": "e1", "target_user_id": "f1"},
            headers=API_HEADERS
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["is_mutual"] is False
        assert data["remaining_super_likes"] == 0

    def test_super_like_quota(self, api):
        client, _ = api
        payload = {"user_id": "e1", "target_user_id": "f1"}
        client.post("/api/v1/recommendations/super-like", json=payload, headers=API_HEADERS)
        response = client.post(
            "/api/v1/recommendations/super-like",
            json={"user_id": "e1", "target_user_id": "f2"},
            headers=API_HEADERS
        )
        assert response.status_code == 429

    def test_super_like_self(self, api):
        client, _ = api
        response = client.post(
            "/api/v1/recommendations/super-like",
            json={"user_id": "e1", "target_user_id": "e1"},
            headers=API_HEADERS
        )
        assert response.status_code == 422

    def test_super_like_unknown_target(self, api):
        client, _ = api
        response = client.post(
            "/api/v1/recommendations/super-like",
            json={"user_id": "e1", "target_user_id": "ghost"},
            headers=API_HEADERS
        )
        assert response.status_code == 404


class TestSearchRouter:
    def test_search(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/search", params={"query": "tech", "role": "funder"}, headers=API_HEADERS
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["query"] == "tech"
        assert {item["id"] for item in data["items"]} == {"f1", "f3"}
        assert data["degraded"] is False

    def test_filters_and_sort(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/search",
            params={
                "role": "funder",
                "filters": '{"areas_of_interest": ["tech"]}',
                "sort": '{"field": "investment_range.min", "direction": "desc"}',
            },
            headers=API_HEADERS
        )
        assert response.status_code == 200
        assert [item["id"] for item in response.json()["items"]] == ["f3", "f1"]

    def test_invalid_filters_json(self, api):
        client, _ = api
        response = client.get("/api/v1/search", params={"filters": "{bad"}, headers=API_HEADERS)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E1006"

    def test_filters_must_be_object(self, api):
        client, _ = api
        response = client.get("/api/v1/search", params={"filters": "[1, 2]"}, headers=API_HEADERS)
        assert response.status_code == 400

    def test_invalid_range_filter(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/search", params={"filters": '{"years_experience": {"gte": 3}}'}, headers=API_HEADERS
        )
        assert response.status_code == 400

    def test_suggestions(self, api):
        client, _ = api
        response = client.get(
            "/api/v1/search/suggestions", params={"query": "summit", "role": "funder"}, headers=API_HEADERS
        )
        assert response.status_code == 200
        suggestions = response.json()["suggestions"]
        assert [s["text"] for s in suggestions] == ["Summit Partners"]
        assert suggestions[0]["available_funds"] == 2000000


class TestIndexRouter:
    def test_reindex_profile(self, api):
        client, _ = api
        response = client.post("/api/v1/index/reindex", json={"profile_id": "e2"}, headers=API_HEADERS)
        assert response.status_code == 200
        data = response.json()
        assert data["role"] == "entrepreneur"
        assert data["tokens"] > 0

    def test_reindex_unknown_profile(self, api):
        client, _ = api
        response = client.post("/api/v1/index/reindex", json={"profile_id": "ghost"}, headers=API_HEADERS)
        assert response.status_code == 404

    def test_reindex_all_requires_admin_key(self, api):
        client, _ = api
        response = client.post("/api/v1/index/reindex-all", headers=API_HEADERS)
        assert response.status_code == 401

    def test_reindex_all_wrong_admin_key(self, api):
        client, _ = api
        response = client.post(
            "/api/v1/index/reindex-all", headers={**API_HEADERS, "X-ADMIN-KEY": "wrong"}
        )
        assert response.status_code == 403

    def test_reindex_all_unconfigured_admin_key(self, api):
        client, _ = api
        with patch.dict(os.environ, {"ADMIN_API_KEY": ""}):
            response = client.post(
                "/api/v1/index/reindex-all", headers={**API_HEADERS, "X-ADMIN-KEY": "test-admin-key"}
            )
        assert response.status_code == 403

    def test_reindex_all_queues_task(self, api):
        client, _ = api
        with patch("venturematch.routers.index.reindex_all_profiles") as task:
            task.delay.return_value = Mock(id="task-123")
            response = client.post(
                "/api/v1/index/reindex-all", headers={**API_HEADERS, "X-ADMIN-KEY": "test-admin-key"}
            )
        assert response.status_code == 202
        assert response.json() == {"success": True, "task_id": "task-123", "status": "queued"}
        task.delay.assert_called_once_with()

    def test_reindex_all_queue_failure(self, api):
        client, _ = api
        with patch("venturematch.routers.index.reindex_all_profiles") as task:
            task.delay.side_effect = ConnectionError("broker down")
            response = client.post(
                "/api/v1/index/reindex-all", headers={**API_HEADERS, "X-ADMIN-KEY": "test-admin-key"}
            )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "E4001"
