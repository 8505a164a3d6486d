import asyncio
import fnmatch
import time

import redis

from utils.cache import CacheManager, MemoryCache, RedisCache, create_cache_backend


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def scan_iter(self, match=None):
        return [key.encode() for key in self.data if fnmatch.fnmatchcase(key, match)]


class SlowRedis(FakeRedis):
    def get(self, key):
        time.sleep(0.2)
        return super().get(key)


class BrokenBackend(MemoryCache):
    def get(self, key):
        raise redis.ConnectionError('connection refused')

    def set(self, key, value, ttl):
        raise redis.ConnectionError('connection refused')


def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set('a', {'score': 1}, ttl=10)

    assert cache.get('a').hit == True
    assert cache.get('a').value == {'score': 1}
    clock.now += 10
    assert cache.get('a').hit == False


def test_cached_none_is_still_a_hit():
    cache = CacheManager(MemoryCache(), 'ns', 60)
    cache.set('empty', None)
    lookup = cache.get('empty')
    assert lookup.hit == True
    assert lookup.value is None


def test_memory_cache_evicts_oldest():
    cache = MemoryCache(max_size=2)
    cache.set('a', 1, 60)
    cache.set('b', 2, 60)
    cache.set('c', 3, 60)
    assert cache.get('a').hit == False
    assert cache.get('c').value == 3


def test_memory_cache_cleanup():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set('short', 1, 5)
    cache.set('long', 2, 50)
    clock.now += 10
    assert cache.cleanup() == 1
    assert cache.keys('*') == ['long']


def test_manager_stats_and_namespacing():
    backend = MemoryCache()
    cache = CacheManager(backend, 'whois', 60)
    cache.set('example.com', 'data')
    cache.get('example.com')
    cache.get('missing.com')

    assert backend.get('whois:example.com').hit == True
    stats = cache.stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 1
    assert stats['sets'] == 1
    assert stats['hit_rate'] == 0.5
    assert stats['backend'] == 'MemoryCache'


def test_get_or_set_calls_factory_once():
    cache = CacheManager(MemoryCache(), 'ns', 60)
    calls = []

    def factory():
        calls.append(1)
        return 'value'

    assert cache.get_or_set('k', factory) == 'value'
    assert cache.get_or_set('k', factory) == 'value'
    assert len(calls) == 1
    assert cache.has('k') == True


def test_invalidate_by_pattern_stays_in_namespace():
    backend = MemoryCache()
    orchestration = CacheManager(backend, 'orchestration', 60)
    ssl = CacheManager(backend, 'ssl', 60)
    orchestration.set('https://a.example.com/', 1)
    orchestration.set('https://b.example.com/', 2)
    orchestration.set('https://other.org/', 3)
    ssl.set('a.example.com:443', 4)

    assert orchestration.invalidate('*example.com*') == 2
    assert orchestration.has('https://other.org/') == True
    assert ssl.has('a.example.com:443') == True
    assert orchestration.clear() == 1


def test_backend_errors_are_swallowed():
    cache = CacheManager(BrokenBackend(), 'ns', 60)
    cache.set('k', 'v')
    assert cache.get('k').hit == False
    assert cache.stats()['errors'] == 2


def test_redis_cache_round_trip():
    cache = CacheManager(RedisCache(FakeRedis()), 'ai', 60)
    cache.set('key', {'risk_score': 10})
    assert cache.get('key').value == {'risk_score': 10}
    assert cache.invalidate('k*') == 1
    assert cache.get('key').hit == False


def test_memory_backend_selected_by_name():
    assert isinstance(create_cache_backend('memory'), MemoryCache)


def test_async_reads_leave_event_loop_free():
    cache = CacheManager(RedisCache(SlowRedis()), 'whois', 60)

    async def read_while_ticking():
        started = time.perf_counter()
        ticks = []

        async def tick():
            for _ in range(3):
                ticks.append(time.perf_counter() - started)
                await asyncio.sleep(0.01)

        await cache.set_async('example.com', {'age_in_days': 9000})
        lookup, _ = await asyncio.gather(cache.get_async('example.com'), tick())
        return lookup, ticks

    lookup, ticks = asyncio.run(read_while_ticking())
    assert lookup.value == {'age_in_days': 9000}
    assert ticks[0] < 0.1
    assert cache.stats()['hits'] == 1
