"""
Unit tests for per-tier usage quotas.
"""
import pytest
import os
from unittest.mock import Mock, patch

from redis.exceptions import RedisError

from venturematch.adapters.quota import (
    ACTION_RECOMMENDATIONS,
    ACTION_REFRESH,
    ACTION_SUPER_LIKE,
    QuotaConfig,
    UsageQuotaService,
)
from venturematch.schemas.profile import SubscriptionTier


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quota(clock):
    return UsageQuotaService(config=QuotaConfig(), clock=clock)


class TestDailyCounters:
    def test_basic_tier_recommendation_limit(self, quota):
        decisions = [
            quota.check_and_consume_quota("u1", ACTION_RECOMMENDATIONS, SubscriptionTier.BASIC)
            for _ in range(6)
        ]
        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[0].remaining == 4
        assert decisions[-1].retry_after_seconds > 0

    def test_refused_request_not_consumed(self, quota, clock):
        for _ in range(6):
            quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        clock.now += 24 * 60 * 60
        assert quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).remaining == 0

    def test_window_resets(self, quota, clock):
        quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        assert not quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed
        clock.now += 24 * 60 * 60
        assert quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed

    def test_platinum_unlimited(self, quota):
        for _ in range(100):
            decision = quota.check_and_consume_quota("u1", ACTION_RECOMMENDATIONS, SubscriptionTier.PLATINUM)
        assert decision.allowed
        assert decision.limit is None

    def test_users_are_independent(self, quota):
        quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        assert quota.check_and_consume_quota("u2", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed

    def test_unknown_action(self, quota):
        with pytest.raises(ValueError):
            quota.check_and_consume_quota("u1", "teleport", SubscriptionTier.BASIC)

    def test_disabled(self, clock):
        quota = UsageQuotaService(config=QuotaConfig(enabled=False), clock=clock)
        for _ in range(10):
            assert quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed


class TestRefreshCooldown:
    def test_cooldown(self, quota, clock):
        assert quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.GOLD).allowed
        refused = quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.GOLD)
        assert not refused.allowed
        assert refused.retry_after_seconds == 3600
        clock.now += 3600
        assert quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.GOLD).allowed

    def test_retry_after_rounds_up(self, quota, clock):
        quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.PLATINUM)
        clock.now += 15 * 60 - 0.5
        assert quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.PLATINUM).retry_after_seconds == 1


class TestMemoryHousekeeping:
    def test_expired_counters_dropped_on_write(self, clock):
        quota = UsageQuotaService(config=QuotaConfig(), clock=clock, sweep_every=2)
        quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        clock.now += 24 * 60 * 60
        quota.check_and_consume_quota("u2", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        assert set(quota._memory) == {"quota:super_like:u2"}

    def test_sweep(self, quota, clock):
        quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.PLATINUM)
        quota.check_and_consume_quota("u2", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        clock.now += 15 * 60
        assert quota.sweep() == 1
        assert not quota.check_and_consume_quota("u2", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed


class TestRedisBackedQuota:
    def test_counter_uses_incr_and_expire(self, clock):
        client = Mock()
        client.incr.return_value = 1
        quota = UsageQuotaService(config=QuotaConfig(), redis_client=client, clock=clock)
        decision = quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.CHROME)
        assert decision.allowed
        assert decision.remaining == 2
        client.incr.assert_called_once_with("quota:super_like:u1")
        client.expire.assert_called_once_with("quota:super_like:u1", 24 * 60 * 60)

    def test_denial_rolls_back_increment(self, clock):
        client = Mock()
        client.incr.return_value = 2
        client.ttl.return_value = 120
        quota = UsageQuotaService(config=QuotaConfig(), redis_client=client, clock=clock)
        decision = quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC)
        assert not decision.allowed
        assert decision.retry_after_seconds == 120
        client.decr.assert_called_once_with("quota:super_like:u1")

    def test_cooldown_uses_set_nx(self, clock):
        client = Mock()
        client.set.return_value = None
        client.ttl.return_value = 42
        quota = UsageQuotaService(config=QuotaConfig(), redis_client=client, clock=clock)
        decision = quota.check_and_consume_quota("u1", ACTION_REFRESH, SubscriptionTier.BASIC)
        assert not decision.allowed
        assert decision.retry_after_seconds == 42

    def test_redis_error_falls_back_to_memory(self, clock):
        client = Mock()
        client.incr.side_effect = RedisError("down")
        quota = UsageQuotaService(config=QuotaConfig(), redis_client=client, clock=clock)
        assert quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed
        assert not quota.check_and_consume_quota("u1", ACTION_SUPER_LIKE, SubscriptionTier.BASIC).allowed


class TestQuotaConfig:
    def test_env_overrides(self):
        with patch.dict(os.environ, {"QUOTA_SUPER_LIKES": '{"Basic": 4, "Platinum": null}'}):
            config = QuotaConfig.from_env()
        assert config.super_likes[SubscriptionTier.BASIC] == 4
        assert config.super_likes[SubscriptionTier.PLATINUM] is None
        assert config.super_likes[SubscriptionTier.GOLD] == 10

    def test_invalid_json_keeps_defaults(self):
        with patch.dict(os.environ, {"QUOTA_DAILY_RECOMMENDATIONS": "{oops"}):
            config = QuotaConfig.from_env()
        assert config.daily_recommendations[SubscriptionTier.BASIC] == 5
