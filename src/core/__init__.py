"""
Core utilities shared across the application.
"""

from .cache import Cache, CacheConflictError, CacheError, MemoryCache, RedisCache, build_cache
from .logger import LOG_LEVELS, setup_logging

__all__ = [
    "Cache",
    "CacheConflictError",
    "CacheError",
    "MemoryCache",
    "RedisCache",
    "build_cache",
    "LOG_LEVELS",
    "setup_logging",
]
