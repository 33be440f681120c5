"""
Shared test fixtures: controllable clocks, memory-backed cache clients and
a Redis stand-in that can be told to lose its connection.
"""
from datetime import datetime, timedelta, timezone

import pytest
import redis

from matchfeed.cache import CacheClient, CacheConfig, MemoryStore


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUTCClock:
    """Wall clock returning aware UTC datetimes, advanced by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakePool:
    def __init__(self):
        self.disconnected = False

    def disconnect(self):
        self.disconnected = True


class FlakyRedis:
    """
    Stand-in for redis.Redis backed by a MemoryStore.

    While ``down`` is True every command raises redis.ConnectionError;
    ``fail_next(n)`` makes only the next n commands fail.
    """

    def __init__(self, clock=None):
        self.store = MemoryStore(clock=clock) if clock else MemoryStore()
        self.connection_pool = FakePool()
        self.down = False
        self.failures_left = 0
        self.calls = 0

    def fail_next(self, count: int) -> None:
        self.failures_left = count

    def __getattr__(self, name):
        target = getattr(self.store, name)

        def command(*args, **kwargs):
            self.calls += 1
            if self.failures_left > 0:
                self.failures_left -= 1
                raise redis.ConnectionError("Connection reset by peer")
            if self.down:
                raise redis.ConnectionError("Connection refused")
            return target(*args, **kwargs)

        return command


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def utc_now():
    return datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def utc_clock(utc_now):
    return FakeUTCClock(utc_now)


@pytest.fixture
def memory_cache(clock):
    """A CacheClient in memory mode with a controllable clock."""
    return CacheClient(
        CacheConfig(use_memory=True),
        fallback_factory=lambda: MemoryStore(clock=clock),
        clock=clock,
    )


@pytest.fixture
def flaky_redis(clock):
    return FlakyRedis(clock=clock)


@pytest.fixture
def redis_config():
    """Redis config with zero retry delays so tests never sleep."""
    return CacheConfig(
        url="redis://localhost:6379/0",
        retry_base_delay=0,
        retry_max_delay=0,
        retry_jitter=0,
        error_threshold=10,
        error_window_seconds=60,
        reconnect_threshold=20,
        reconnect_window_seconds=60,
    )


@pytest.fixture
def redis_cache(redis_config, flaky_redis, clock):
    """A CacheClient in redis mode talking to the flaky stand-in."""
    sleeps = []
    client = CacheClient(
        redis_config,
        fallback_factory=lambda: MemoryStore(clock=clock),
        redis_factory=lambda config: flaky_redis,
        clock=clock,
        sleep=sleeps.append,
    )
    client.sleeps = sleeps
    return client
