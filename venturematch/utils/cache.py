"""
Result cache for the matching service.

Provides a small key-value contract with TTL expiry, used by both the
recommendation ranker and the search index. Redis is the production
backend; an in-process store with expiry is used when Redis is not
configured or unreachable. The cache is never a source of truth.
"""
import os
import json
import time
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Cache configuration."""
    backend: str = "memory"           # "redis" or "memory"
    redis_url: str = "redis://localhost:6379/0"
    enabled: bool = True
    default_ttl_seconds: int = 3600

    @classmethod
    def from_env(cls) -> 'CacheConfig':
        return cls(
            backend=os.getenv("CACHE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            enabled=os.getenv("CACHE_ENABLED", "true").lower() == "true",
            default_ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "3600")),
        )


def _canonical(value: Any) -> Any:
    """Normalize nested data so equivalent structures serialize identically."""
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_canonical(v) for v in value)
    return value


def make_cache_key(namespace: str, **parts: Any) -> str:
    """
    Build a structured cache key.

    Parts are serialized as canonical JSON (sorted keys at every level) and
    hashed, so dicts that differ only in insertion order map to one key.

    Example:
        make_cache_key("search", role="funder", tokens=["ai"], page=1)
    """
    payload = json.dumps(_canonical(parts), sort_keys=True, separators=(",", ":"), default=str)
    hash_value = hashlib.sha256(payload.encode('utf-8')).hexdigest()[:32]
    return f"{namespace}:{hash_value}"


class MemoryCache:
    """
    In-process cache with per-key expiry.

    Values are stored as JSON text so callers get a fresh copy on every read,
    matching what they would get back from Redis.
    """

    backend_name = "memory"

    def __init__(self, enabled: bool = True, default_ttl: int = 3600, clock=time.monotonic,
                 sweep_every: int = 256):
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.sweep_every = sweep_every
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._writes = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        if not self.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, serialized = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
        return json.loads(serialized)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a value for ``ttl`` seconds."""
        if not self.enabled:
            return False

        try:
            serialized = json.dumps(value)
        except TypeError as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            return False

        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + ttl, serialized)
            self._writes += 1
            due = self.sweep_every > 0 and self._writes % self.sweep_every == 0
        if due:
            self.sweep()
        return True

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        with self._lock:
            self._entries.pop(key, None)
        return True

    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def get_stats(self) -> dict:
        if not self.enabled:
            return {"enabled": False}
        self.sweep()
        return {
            "enabled": True,
            "backend": self.backend_name,
            "keys": len(self._entries)
        }


class RedisCache:
    """
    Redis cache client with automatic fallback.

    Any Redis failure is logged and reported as a miss, so callers always
    recompute from the profile store rather than fail.
    """

    backend_name = "redis"

    def __init__(self, url: str = "redis://localhost:6379/0", enabled: bool = True, default_ttl: int = 3600):
        self.enabled = enabled
        self.default_ttl = default_ttl
        self._client: Optional[redis.Redis] = None
        self._url = url
        self._connected = False

        if self.enabled:
            self._connect()

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client if self._connected else None

    @property
    def connected(self) -> bool:
        return self._connected

    def _connect(self) -> bool:
        """Establish Redis connection with proper error handling."""
        if self._connected and self._client:
            return True

        try:
            redis_kwargs = {
                "decode_responses": False,  # We handle encoding ourselves
                "socket_timeout": 5,
                "socket_connect_timeout": 5,
                "retry_on_timeout": True
            }
            if self._url.startswith("rediss://"):
                redis_kwargs["ssl_cert_reqs"] = "none"

            self._client = redis.from_url(self._url, **redis_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("Redis cache connected successfully")
            return True
        except RedisError as e:
            logger.warning(f"Redis connection failed, caching disabled: {e}")
            self._connected = False
            return False

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from cache.
        Returns None if key not found or cache is disabled/unavailable.
        """
        if not self.enabled or not self._connected:
            return None

        try:
            value = self._client.get(key)
            if value is None:
                return None
            return json.loads(value.decode('utf-8'))
        except (RedisError, json.JSONDecodeError) as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set a value in cache with TTL.
        Returns True if successful, False otherwise.
        """
        if not self.enabled or not self._connected:
            return False

        ttl = self.default_ttl if ttl is None else ttl
        try:
            serialized = json.dumps(value).encode('utf-8')
            self._client.setex(key, ttl, serialized)
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete a key from cache."""
        if not self.enabled or not self._connected:
            return False

        try:
            self._client.delete(key)
            return True
        except RedisError as e:
            logger.warning(f"Cache delete error for key {key}: {e}")
            return False

    def get_stats(self) -> dict:
        """Get cache statistics."""
        if not self.enabled:
            return {"enabled": False}

        if not self._connected:
            return {"enabled": True, "backend": self.backend_name, "connected": False}

        try:
            info = self._client.info('memory')
            return {
                "enabled": True,
                "backend": self.backend_name,
                "connected": True,
                "used_memory": info.get('used_memory_human', 'unknown'),
                "max_memory": info.get('maxmemory_human', 'unlimited'),
                "keys": self._client.dbsize()
            }
        except RedisError as e:
            return {"enabled": True, "backend": self.backend_name, "connected": False, "error": str(e)}


def create_cache(config: Optional[CacheConfig] = None):
    """
    Build the configured cache.

    Falls back to the in-memory cache when Redis is requested but unreachable.
    """
    config = config or CacheConfig.from_env()

    if config.backend == "redis" and config.enabled:
        redis_cache = RedisCache(url=config.redis_url, enabled=True, default_ttl=config.default_ttl_seconds)
        if redis_cache.connected:
            return redis_cache
        logger.warning("Redis requested for result cache but unavailable, using in-memory cache")

    return MemoryCache(enabled=config.enabled, default_ttl=config.default_ttl_seconds)
