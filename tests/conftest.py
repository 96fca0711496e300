import fnmatch
from unittest.mock import AsyncMock

import pytest

from pod_sentinel.config import SentinelConfig
from pod_sentinel.metadata_store import MetadataStore
from pod_sentinel.timer_store import TimerStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the sentinel makes"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.values = {}
        self.expires_at = {}
        self.lists = {}
        self.config = {}

    def _evict(self, key):
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    def _live_keys(self):
        for key in list(self.values):
            self._evict(key)
        return sorted(self.values)

    async def set(self, key, value, ex=None, nx=False):
        self._evict(key)
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.expires_at[key] = self.clock() + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def get(self, key):
        self._evict(key)
        return self.values.get(key)

    async def ttl(self, key):
        self._evict(key)
        if key not in self.values:
            return -2
        if key not in self.expires_at:
            return -1
        return int(self.expires_at[key] - self.clock())

    async def exists(self, *keys):
        present = 0
        for key in keys:
            self._evict(key)
            if key in self.values:
                present += 1
        return present

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            self._evict(key)
            if key in self.values:
                del self.values[key]
                self.expires_at.pop(key, None)
                removed += 1
        return removed

    async def scan(self, cursor=0, match=None, count=None):
        keys = [k for k in self._live_keys() if match is None or fnmatch.fnmatchcase(k, match)]
        count = count or 10
        page = keys[cursor:cursor + count]
        next_cursor = cursor + count
        if next_cursor >= len(keys):
            next_cursor = 0
        return next_cursor, page

    async def scan_iter(self, match=None, count=None):
        for key in self._live_keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def config_set(self, name, value):
        self.config[name] = value
        return True

    async def aclose(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def timer_store(fake_redis, clock):
    return TimerStore(
        fake_redis,
        prefix="shutdown",
        grace_seconds=60,
        claim_window_seconds=30,
        dead_letter_key="failed-stops",
        clock=clock,
    )


@pytest.fixture
def config():
    return SentinelConfig(
        runpod_api_key="test-key",
        runpod_api_url="https://runpod.test/graphql",
        provider_timeout=5.0,
        redis_url="redis://localhost:6379/0",
        redis_db=0,
        mongo_uri="mongodb://localhost:27017",
        mongo_database="podActivityDB",
        mongo_collection="podMetadata",
        idle_threshold=5.0,
        extension_seconds=3600,
        detection_mode="both",
        poll_interval=15.0,
        poll_max_keys=1000,
        timer_grace_seconds=60,
        claim_window_seconds=30,
        reconnect_delay=0.01,
        configure_keyspace_events=False,
    )


@pytest.fixture
def metadata_store():
    """Metadata store whose lookups come from a plain dict"""
    mapping = {}
    store = AsyncMock(spec=MetadataStore)
    store.mapping = mapping
    store.find_subscription.side_effect = lambda pod_id: mapping.get(pod_id)
    return store
