"""
Key-value cache backends with TTL semantics.

Redis is the primary backend. When Redis is not reachable the engine falls back
to a process-local in-memory cache so detection keeps working on a single node.
Values are JSON-serializable dicts or lists.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis
import structlog

logger = structlog.get_logger(__name__)

UpdateFn = Callable[[Optional[Any]], Any]


class CacheError(Exception):
    """Raised when the backend cannot complete an atomic update"""


class CacheConflictError(CacheError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers"""


class Cache(ABC):
    """Abstract cache interface used by the baseline store and result cache"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss"""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store a value with a TTL. Returns False if the write failed"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key"""

    @abstractmethod
    def update(self, key: str, fn: UpdateFn, ttl_seconds: int, max_retries: int = 5) -> Any:
        """Atomically replace the value under `key` with `fn(current)`

        Args:
            key: Cache key
            fn: Receives the current value (None on a miss) and returns the new one
            ttl_seconds: TTL applied to the new value
            max_retries: Attempts before giving up on a contended key

        Returns:
            The value written

        Raises:
            CacheError: If the backend failed during the update
            CacheConflictError: If every attempt lost a race with another writer
        """

    @abstractmethod
    def ping(self) -> bool:
        """Check the backend is reachable"""

    def purge_expired(self) -> int:
        """Drop expired entries the backend does not evict by itself. Returns how many"""
        return 0

    def close(self) -> None:
        """Release backend resources"""


class RedisCache(Cache):
    """Redis cache backend"""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.redis = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            socket_timeout=5,
        )

    def get(self, key: str) -> Optional[Any]:
        try:
            data = self.redis.get(key)
        except redis.RedisError as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

        if data is None:
            logger.debug("Cache MISS", key=key)
            return None

        try:
            value = json.loads(data)
        except ValueError as e:
            logger.warning("Discarding undecodable cache entry", key=key, error=str(e))
            return None

        logger.debug("Cache HIT", key=key)
        return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            self.redis.setex(key, ttl_seconds, json.dumps(value))
            logger.debug("Cache SET", key=key, ttl=ttl_seconds)
            return True
        except redis.RedisError as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            logger.error("Cache delete failed", key=key, error=str(e))

    def update(self, key: str, fn: UpdateFn, ttl_seconds: int, max_retries: int = 5) -> Any:
        # Optimistic locking: WATCH the key, compute, then MULTI/EXEC.
        # EXEC aborts with WatchError if another client wrote the key meanwhile.
        try:
            with self.redis.pipeline() as pipe:
                for attempt in range(1, max_retries + 1):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        current = json.loads(raw) if raw is not None else None
                        new_value = fn(current)

                        pipe.multi()
                        pipe.setex(key, ttl_seconds, json.dumps(new_value))
                        pipe.execute()
                        return new_value
                    except redis.WatchError:
                        logger.debug(
                            "Concurrent write detected, retrying", key=key, attempt=attempt
                        )
                    finally:
                        pipe.reset()
        except redis.RedisError as e:
            logger.error("Cache update failed", key=key, error=str(e))
            raise CacheError(f"Failed to update {key}: {e}") from e

        raise CacheConflictError(f"Gave up updating {key} after {max_retries} attempts")

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.warning("Redis ping failed", host=self.host, port=self.port, error=str(e))
            return False

    def close(self) -> None:
        self.redis.close()


class MemoryCache(Cache):
    """In-process cache with per-entry expiry"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._read(key)
        if entry is None:
            logger.debug("Cache MISS", key=key)
            return None
        logger.debug("Cache HIT", key=key)
        return json.loads(entry)

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        data = json.dumps(value)
        with self._lock:
            self._entries[key] = (data, self._clock() + ttl_seconds)
        logger.debug("Cache SET", key=key, ttl=ttl_seconds)
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def update(self, key: str, fn: UpdateFn, ttl_seconds: int, max_retries: int = 5) -> Any:
        # A single lock serializes writers, so no retry is ever needed here
        with self._lock:
            raw = self._read(key)
            current = json.loads(raw) if raw is not None else None
            new_value = fn(current)
            self._entries[key] = (json.dumps(new_value), self._clock() + ttl_seconds)
        return new_value

    def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed"""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def _read(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return data


def build_cache(
    host: Optional[str],
    port: int = 6379,
    db: int = 0,
    password: Optional[str] = None,
) -> Cache:
    """Connect to Redis, falling back to an in-memory cache when unreachable"""
    if not host:
        logger.warning("Redis host not configured, using in-memory cache")
        return MemoryCache()

    cache = RedisCache(host=host, port=port, db=db, password=password)
    if cache.ping():
        logger.info("Redis cache initialized", host=host, port=port)
        return cache

    cache.close()
    logger.warning("Redis unreachable, falling back to in-memory cache", host=host, port=port)
    return MemoryCache()
