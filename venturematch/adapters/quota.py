"""
Usage quota adapter.

Per-tier daily limits for recommendation views and super-likes, and a
per-tier cooldown between recommendation refreshes. Counters live in Redis
when a client is supplied so limits hold across API workers; otherwise
they are kept in process memory.
"""
import os
import json
import math
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from venturematch.schemas.profile import SubscriptionTier

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

ACTION_RECOMMENDATIONS = "recommendations"
ACTION_REFRESH = "refresh"
ACTION_SUPER_LIKE = "super_like"

# None means unlimited
DEFAULT_DAILY_RECOMMENDATIONS = {
    SubscriptionTier.BASIC: 5,
    SubscriptionTier.CHROME: 10,
    SubscriptionTier.BRONZE: 20,
    SubscriptionTier.SILVER: 30,
    SubscriptionTier.GOLD: 50,
    SubscriptionTier.PLATINUM: None,
}

DEFAULT_REFRESH_INTERVALS = {
    SubscriptionTier.BASIC: 24 * 60 * 60,
    SubscriptionTier.CHROME: 12 * 60 * 60,
    SubscriptionTier.BRONZE: 6 * 60 * 60,
    SubscriptionTier.SILVER: 3 * 60 * 60,
    SubscriptionTier.GOLD: 1 * 60 * 60,
    SubscriptionTier.PLATINUM: 15 * 60,
}

DEFAULT_SUPER_LIKES = {
    SubscriptionTier.BASIC: 1,
    SubscriptionTier.CHROME: 3,
    SubscriptionTier.BRONZE: 5,
    SubscriptionTier.SILVER: 7,
    SubscriptionTier.GOLD: 10,
    SubscriptionTier.PLATINUM: None,
}


def _tier_map_from_env(name: str, default: Dict[SubscriptionTier, Optional[int]]) -> Dict[SubscriptionTier, Optional[int]]:
    raw = os.getenv(name)
    if not raw:
        return dict(default)
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"{name} is not valid JSON, using defaults")
        return dict(default)
    merged = dict(default)
    for tier_name, value in overrides.items():
        merged[SubscriptionTier(tier_name)] = None if value is None else int(value)
    return merged


@dataclass
class QuotaConfig:
    daily_recommendations: Dict[SubscriptionTier, Optional[int]] = field(
        default_factory=lambda: dict(DEFAULT_DAILY_RECOMMENDATIONS))
    refresh_intervals: Dict[SubscriptionTier, Optional[int]] = field(
        default_factory=lambda: dict(DEFAULT_REFRESH_INTERVALS))
    super_likes: Dict[SubscriptionTier, Optional[int]] = field(
        default_factory=lambda: dict(DEFAULT_SUPER_LIKES))
    enabled: bool = True

    @classmethod
    def from_env(cls) -> 'QuotaConfig':
        return cls(
            daily_recommendations=_tier_map_from_env("QUOTA_DAILY_RECOMMENDATIONS", DEFAULT_DAILY_RECOMMENDATIONS),
            refresh_intervals=_tier_map_from_env("QUOTA_REFRESH_INTERVALS", DEFAULT_REFRESH_INTERVALS),
            super_likes=_tier_map_from_env("QUOTA_SUPER_LIKES", DEFAULT_SUPER_LIKES),
            enabled=os.getenv("QUOTA_ENABLED", "true").lower() == "true",
        )


@dataclass
class QuotaDecision:
    allowed: bool
    limit: Optional[int] = None
    remaining: Optional[int] = None
    retry_after_seconds: int = 0


class UsageQuotaService:
    """Checks and consumes per-user, per-action usage."""

    def __init__(self, config: Optional[QuotaConfig] = None, redis_client=None, clock=time.time,
                 sweep_every: int = 256):
        self.config = config or QuotaConfig.from_env()
        self._redis = redis_client
        self._clock = clock
        self._memory: Dict[str, Tuple[int, float]] = {}
        self.sweep_every = sweep_every
        self._writes = 0
        self._lock = threading.Lock()

    def check_and_consume_quota(self, user_id: str, action: str, tier: SubscriptionTier) -> QuotaDecision:
        """
        Consume one unit of ``action`` for ``user_id`` if the tier allows it.

        Refused requests do not consume anything.
        """
        if not self.config.enabled:
            return QuotaDecision(allowed=True)

        tier = SubscriptionTier(tier)
        if action == ACTION_REFRESH:
            interval = self.config.refresh_intervals.get(tier)
            if not interval:
                return QuotaDecision(allowed=True)
            return self._cooldown(f"quota:refresh:{user_id}", interval)

        if action == ACTION_RECOMMENDATIONS:
            limit = self.config.daily_recommendations.get(tier)
        elif action == ACTION_SUPER_LIKE:
            limit = self.config.super_likes.get(tier)
        else:
            raise ValueError(f"Unknown quota action: {action}")

        if limit is None:
            return QuotaDecision(allowed=True)
        return self._counter(f"quota:{action}:{user_id}", limit, DAY_SECONDS)

    def _counter(self, key: str, limit: int, window: int) -> QuotaDecision:
        if self._redis is not None:
            try:
                count = self._redis.incr(key)
                if count == 1:
                    self._redis.expire(key, window)
                if count > limit:
                    self._redis.decr(key)
                    ttl = self._redis.ttl(key)
                    return QuotaDecision(False, limit, 0, max(int(ttl), 0))
                return QuotaDecision(True, limit, limit - count)
            except RedisError as e:
                logger.warning(f"Quota counter unavailable in Redis, using memory: {e}")

        now = self._clock()
        with self._lock:
            count, expires_at = self._memory.get(key, (0, now + window))
            if expires_at <= now:
                count, expires_at = 0, now + window
            if count >= limit:
                return QuotaDecision(False, limit, 0, max(1, math.ceil(expires_at - now)))
            self._memory[key] = (count + 1, expires_at)
            self._after_write(now)
            return QuotaDecision(True, limit, limit - count - 1)

    def _cooldown(self, key: str, interval: int) -> QuotaDecision:
        if self._redis is not None:
            try:
                if self._redis.set(key, int(self._clock()), nx=True, ex=interval):
                    return QuotaDecision(True)
                ttl = self._redis.ttl(key)
                return QuotaDecision(False, retry_after_seconds=max(int(ttl), 0))
            except RedisError as e:
                logger.warning(f"Quota cooldown unavailable in Redis, using memory: {e}")

        now = self._clock()
        with self._lock:
            _, expires_at = self._memory.get(key, (0, 0.0))
            if expires_at > now:
                return QuotaDecision(False, retry_after_seconds=max(1, math.ceil(expires_at - now)))
            self._memory[key] = (1, now + interval)
            self._after_write(now)
            return QuotaDecision(True)

    def _after_write(self, now: float) -> None:
        # caller holds the lock
        self._writes += 1
        if self.sweep_every > 0 and self._writes % self.sweep_every == 0:
            self._drop_expired(now)

    def _drop_expired(self, now: float) -> int:
        expired = [k for k, (_, expires_at) in self._memory.items() if expires_at <= now]
        for key in expired:
            del self._memory[key]
        return len(expired)

    def sweep(self) -> int:
        """Drop expired in-memory counters and cooldowns. Returns the number removed."""
        with self._lock:
            return self._drop_expired(self._clock())
