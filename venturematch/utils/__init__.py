"""
Utility modules for the matching service.
"""
from .cache import CacheConfig, MemoryCache, RedisCache, create_cache, make_cache_key

__all__ = ['CacheConfig', 'MemoryCache', 'RedisCache', 'create_cache', 'make_cache_key']
