import asyncio
import fnmatch
import pickle
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from hashlib import md5
from typing import Any, Callable, Dict, List, Optional

import redis

from config.default import Config
from utils.logger import setup_logger
from utils.redis_client import get_redis_client

logger = setup_logger('cache')


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read; ``hit`` is the only source of truth for "from cache"."""
    hit: bool
    value: Any = None


MISS = CacheLookup(hit=False)


class CacheBackend(ABC):
    @abstractmethod
    def get(self, key: str) -> CacheLookup:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def keys(self, pattern: str) -> List[str]:
        pass

    @property
    def name(self) -> str:
        return type(self).__name__


class MemoryCache(CacheBackend):
    """In-process TTL cache. The oldest entry is evicted once ``max_size`` is reached."""

    def __init__(self, max_size: int = None, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size or Config.MEMORY_CACHE_MAX_SIZE
        self._clock = clock
        self._entries: 'OrderedDict[str, tuple]' = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> CacheLookup:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return MISS
            return CacheLookup(hit=True, value=value)

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(self, pattern: str) -> List[str]:
        now = self._clock()
        with self._lock:
            return [
                key for key, (expires_at, _) in self._entries.items()
                if expires_at > now and fnmatch.fnmatchcase(key, pattern)
            ]

    def cleanup(self) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)


class RedisCache(CacheBackend):
    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get(self, key: str) -> CacheLookup:
        cached_data = self.redis.get(key)
        if cached_data is None:
            return MISS
        return CacheLookup(hit=True, value=pickle.loads(cached_data))

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.redis.setex(key, ttl, pickle.dumps(value))

    def delete(self, key: str) -> bool:
        return bool(self.redis.delete(key))

    def keys(self, pattern: str) -> List[str]:
        return [
            key.decode() if isinstance(key, bytes) else key
            for key in self.redis.scan_iter(match=pattern)
        ]


class CacheManager:
    """Namespaced view over a cache backend with hit/miss accounting.

    Reads and writes never raise: backend failures are logged and treated as
    a miss (for reads) or dropped (for writes), so a broken cache degrades to
    recomputation instead of failing the request.
    """

    def __init__(self, backend: CacheBackend, prefix: str, default_ttl: int):
        self.backend = backend
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'deletes': 0, 'errors': 0}

    @staticmethod
    def hash_key(text: str) -> str:
        return md5(text.encode()).hexdigest()

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> CacheLookup:
        try:
            lookup = self.backend.get(self._key(key))
        except Exception as e:
            self._stats['errors'] += 1
            logger.error(f"Cache read error for {self.prefix}: {str(e)}")
            return MISS

        if lookup.hit:
            self._stats['hits'] += 1
            logger.debug(f"Cache hit: {self._key(key)}")
        else:
            self._stats['misses'] += 1
        return lookup

    def set(self, key: str, value: Any, ttl: int = None) -> None:
        try:
            self.backend.set(self._key(key), value, ttl or self.default_ttl)
            self._stats['sets'] += 1
        except Exception as e:
            self._stats['errors'] += 1
            logger.error(f"Cache setting error for {self.prefix}: {str(e)}")

    async def get_async(self, key: str) -> CacheLookup:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get, key)

    async def set_async(self, key: str, value: Any, ttl: int = None) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.set, key, value, ttl)

    def delete(self, key: str) -> bool:
        try:
            deleted = self.backend.delete(self._key(key))
        except Exception as e:
            self._stats['errors'] += 1
            logger.error(f"Cache delete error for {self.prefix}: {str(e)}")
            return False
        if deleted:
            self._stats['deletes'] += 1
        return deleted

    def has(self, key: str) -> bool:
        return self.get(key).hit

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: int = None) -> Any:
        lookup = self.get(key)
        if lookup.hit:
            return lookup.value
        value = factory()
        self.set(key, value, ttl)
        return value

    def invalidate(self, pattern: str) -> int:
        """Delete every key in this namespace matching a glob ``pattern``."""
        try:
            matched = self.backend.keys(self._key(pattern))
            removed = sum(1 for key in matched if self.backend.delete(key))
        except Exception as e:
            self._stats['errors'] += 1
            logger.error(f"Cache invalidation error for {self.prefix}: {str(e)}")
            return 0
        self._stats['deletes'] += removed
        logger.info(f"Invalidated {removed} entries matching {self._key(pattern)}")
        return removed

    def clear(self) -> int:
        return self.invalidate('*')

    def stats(self) -> Dict[str, Any]:
        lookups = self._stats['hits'] + self._stats['misses']
        return {
            'prefix': self.prefix,
            'backend': self.backend.name,
            **self._stats,
            'hit_rate': round(self._stats['hits'] / lookups, 4) if lookups else 0.0,
        }


def create_cache_backend(backend: Optional[str] = None) -> CacheBackend:
    """Build the configured backend, falling back to memory when Redis is unreachable."""
    backend = (backend or Config.CACHE_BACKEND).lower()
    if backend == 'redis':
        try:
            return RedisCache(get_redis_client())
        except redis.RedisError as e:
            logger.error(f"Redis unavailable, using in-memory cache: {str(e)}")
    return MemoryCache()
