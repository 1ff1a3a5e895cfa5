"""
Unit tests for the recommendation ranker.
Tests candidate pool, ordering, tier bonus, caching, timeouts and super-likes.
"""
import pytest
from unittest.mock import patch

from conftest import make_entrepreneur, make_funder
from venturematch.adapters.memory_store import InMemoryProfileStore
from venturematch.middleware.error_handling import NotFoundException, OperationTimeoutException, ValidationException
from venturematch.schemas.profile import MatchStatus, SubscriptionTier
from venturematch.services.recommendation_service import (
    DEFAULT_TIER_BONUSES,
    RankingConfig,
    RecommendationService,
    validate_tier_bonuses,
)


@pytest.fixture
def service(profile_store, match_store, memory_cache, scorer):
    return RecommendationService(profile_store, match_store, memory_cache, scorer=scorer, config=RankingConfig())


class TestCandidatePool:
    def test_only_opposite_role(self, service):
        ids = {c.user_id for c in service.recommend("e1")}
        assert ids == {"f1", "f2", "f3"}

    def test_funder_sees_entrepreneurs(self, service):
        ids = {c.user_id for c in service.recommend("f1")}
        assert ids == {"e1", "e2"}

    def test_existing_match_excluded(self, service, match_store):
        match_store.record_match("e1", "f1", MatchStatus.PENDING)
        ids = {c.user_id for c in service.recommend("e1")}
        assert "f1" not in ids

    def test_reverse_direction_excluded(self, service, match_store):
        match_store.record_match("f3", "e1", MatchStatus.REJECTED)
        ids = {c.user_id for c in service.recommend("e1")}
        assert "f3" not in ids

    def test_unknown_subject(self, service):
        with pytest.raises(NotFoundException):
            service.recommend("ghost")

    def test_empty_pool(self, match_store, memory_cache, scorer):
        lonely = RecommendationService(
            InMemoryProfileStore([make_entrepreneur("e1")]), match_store, memory_cache,
            scorer=scorer, config=RankingConfig()
        )
        assert lonely.recommend("e1") == []

    def test_limit_below_one_rejected(self, service):
        with pytest.raises(ValidationException):
            service.recommend("e1", limit=0)


class TestOrdering:
    def test_sorted_by_score_descending(self, service):
        scores = [c.score for c in service.recommend("e1")]
        assert scores == sorted(scores, reverse=True)

    def test_ties_broken_by_id(self, match_store, memory_cache, scorer):
        store = InMemoryProfileStore([make_entrepreneur("e1"), make_funder("fb"), make_funder("fa")])
        svc = RecommendationService(store, match_store, memory_cache, scorer=scorer, config=RankingConfig())
        result = svc.recommend("e1")
        assert [c.user_id for c in result] == ["fa", "fb"]
        assert result[0].score == result[1].score

    def test_ranking_formula_and_tier_bonus(self, service, scorer, profile_store):
        gold = next(c for c in service.recommend("e1") if c.user_id == "f3")
        compat = scorer.score(profile_store.get_profile("e1"), profile_store.get_profile("f3")).total
        expected = (0.75 * compat + 0.15 * 0.5 + 0.10 * 0.0) * (1 + DEFAULT_TIER_BONUSES[SubscriptionTier.GOLD])
        assert gold.score == pytest.approx(expected)
        assert gold.compatibility == pytest.approx(compat)

    def test_tier_bonus_lifts_otherwise_equal_candidate(self, match_store, memory_cache, scorer):
        store = InMemoryProfileStore([
            make_entrepreneur("e1"),
            make_funder("fa"),
            make_funder("fz", subscription_tier="Platinum"),
        ])
        svc = RecommendationService(store, match_store, memory_cache, scorer=scorer, config=RankingConfig())
        result = svc.recommend("e1")
        assert result[0].user_id == "fz"
        assert result[0].compatibility == pytest.approx(result[1].compatibility)

    def test_historical_success_and_activity(self, service):
        history = [
            {"counterpart_id": "x1", "status": "matched", "created_at": "2025-01-01T00:00:00Z"},
            {"counterpart_id": "x2", "status": "matched", "created_at": "2025-01-02T00:00:00Z"},
            {"counterpart_id": "x3", "status": "matched", "created_at": "2025-01-03T00:00:00Z"},
            {"counterpart_id": "x4", "status": "rejected", "created_at": "2025-01-04T00:00:00Z"},
        ]
        candidate = make_funder(match_history=history, activity_count=60)
        assert service.historical_success(candidate) == pytest.approx(0.75)
        assert service.activity_score(candidate) == 1.0
        assert service.historical_success(make_funder()) == 0.5


class TestReasons:
    def test_reasons_for_gold_funder(self, service):
        gold = next(c for c in service.recommend("e1") if c.user_id == "f3")
        assert gold.reasons == ["Strong industry alignment", "Nearby location", "Both profiles verified"]

    def test_unverified_without_location(self, service):
        corner = next(c for c in service.recommend("e1") if c.user_id == "f2")
        assert "Both profiles verified" not in corner.reasons
        assert "Nearby location" not in corner.reasons

    def test_history_and_activity_reasons(self, match_store, memory_cache, scorer):
        history = [
            {"counterpart_id": f"x{i}", "status": "matched", "created_at": "2025-01-01T00:00:00Z"}
            for i in range(4)
        ]
        store = InMemoryProfileStore([
            make_entrepreneur("e1"),
            make_funder("f1", match_history=history, activity_count=30),
        ])
        svc = RecommendationService(store, match_store, memory_cache, scorer=scorer, config=RankingConfig())
        reasons = svc.recommend("e1")[0].reasons
        assert reasons[-2:] == ["High success rate with matches", "Very active on platform"]


class TestCaching:
    def test_second_call_served_from_cache(self, service):
        with patch.object(service.scorer, "score", wraps=service.scorer.score) as spy:
            first = service.recommend("e1")
            calls_after_first = spy.call_count
            second = service.recommend("e1")
        assert calls_after_first == 3
        assert spy.call_count == 3
        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]

    def test_limit_slices_cached_list(self, service):
        assert len(service.recommend("e1", limit=1)) == 1
        assert len(service.recommend("e1", limit=3)) == 3

    def test_refresh_recomputes(self, service, profile_store):
        assert len(service.recommend("e1")) == 3
        profile_store.upsert(make_funder("f4"))
        assert len(service.recommend("e1")) == 3
        assert len(service.refresh("e1")) == 4

    def test_rejection_after_caching_excluded(self, service, match_store):
        assert "f1" in {c.user_id for c in service.recommend("e1")}
        match_store.record_match("f1", "e1", MatchStatus.REJECTED)
        assert "f1" not in {c.user_id for c in service.recommend("e1")}

    def test_match_after_caching_excluded_before_limit(self, service, match_store):
        first = service.recommend("e1")[0].user_id
        match_store.record_match("e1", first, MatchStatus.MATCHED)
        result = service.recommend("e1", limit=1)
        assert len(result) == 1
        assert result[0].user_id != first

    def test_cached_list_served_without_rescoring(self, service, match_store):
        service.recommend("e1")
        match_store.record_match("e1", "f2", MatchStatus.PENDING)
        with patch.object(service.scorer, "score", wraps=service.scorer.score) as spy:
            result = service.recommend("e1")
        assert spy.call_count == 0
        assert {c.user_id for c in result} == {"f1", "f3"}

    def test_deleted_subject_not_served_from_cache(self, service, profile_store):
        service.recommend("e1")
        profile_store.delete("e1")
        with pytest.raises(NotFoundException):
            service.recommend("e1")

    def test_timeout_does_not_cache(self, service, memory_cache):
        with pytest.raises(OperationTimeoutException):
            service.recommend("e1", timeout=0)
        assert memory_cache.get(service.cache_key("e1")) is None

    def test_generous_timeout_caches(self, service, memory_cache):
        service.recommend("e1", timeout=30)
        assert memory_cache.get(service.cache_key("e1")) is not None


class TestSuperLike:
    def test_records_pending_like(self, service, match_store, scorer, profile_store):
        result = service.super_like("e1", "f1")
        compat = scorer.score(profile_store.get_profile("e1"), profile_store.get_profile("f1")).total
        assert result.status == MatchStatus.PENDING
        assert result.is_mutual is False
        assert result.compatibility == pytest.approx(min(1.0, compat * 1.2))
        assert match_store.get_match_status("e1", "f1") == MatchStatus.PENDING

    def test_reciprocal_like_is_mutual(self, service, match_store):
        service.super_like("e1", "f1")
        result = service.super_like("f1", "e1")
        assert result.is_mutual is True
        assert result.status == MatchStatus.MATCHED
        assert match_store.get_match_status("e1", "f1") == MatchStatus.MATCHED
        assert match_store.get_match_status("f1", "e1") == MatchStatus.MATCHED

    def test_boost_capped(self, profile_store, match_store, memory_cache, scorer):
        svc = RecommendationService(
            profile_store, match_store, memory_cache, scorer=scorer,
            config=RankingConfig(super_like_boost=10.0)
        )
        assert svc.super_like("e1", "f3").compatibility == 1.0

    def test_invalidates_both_caches(self, service, memory_cache):
        service.recommend("e1")
        service.recommend("f1")
        service.super_like("e1", "f1")
        assert memory_cache.get(service.cache_key("e1")) is None
        assert memory_cache.get(service.cache_key("f1")) is None
        assert "f1" not in {c.user_id for c in service.recommend("e1")}

    def test_unknown_target(self, service):
        with pytest.raises(NotFoundException):
            service.super_like("e1", "ghost")

    def test_self_like_rejected(self, service):
        with pytest.raises(ValidationException):
            service.super_like("e1", "e1")


class TestRankingConfig:
    def test_decreasing_bonuses_rejected(self):
        bonuses = dict(DEFAULT_TIER_BONUSES)
        bonuses[SubscriptionTier.PLATINUM] = 0.01
        with pytest.raises(ValueError):
            validate_tier_bonuses(bonuses)

    def test_negative_bonus_rejected(self):
        bonuses = dict(DEFAULT_TIER_BONUSES)
        bonuses[SubscriptionTier.BASIC] = -0.1
        with pytest.raises(ValueError):
            validate_tier_bonuses(bonuses)

    def test_env_tier_bonuses(self):
        with patch.dict("os.environ", {"TIER_BONUSES": '{"Platinum": 0.5}'}):
            config = RankingConfig.from_env()
        assert config.tier_bonuses[SubscriptionTier.PLATINUM] == 0.5
        assert config.tier_bonuses[SubscriptionTier.GOLD] == 0.20
