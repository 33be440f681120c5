"""
Tests for the fault-tolerant cache client: retries, the one-way fuse to
memory, configuration validation and memory mode.
"""
import logging
import threading
import time

import pytest
import redis

from matchfeed.cache import CacheClient, CacheConfig, CacheConfigError, CacheError, CacheMode, MemoryStore
from matchfeed.cache import client as client_module
from matchfeed.cache.client import redis_from_config


def make_client(config, backend, clock):
    sleeps = []
    client = CacheClient(
        config,
        fallback_factory=lambda: MemoryStore(clock=clock),
        redis_factory=lambda c: backend,
        clock=clock,
        sleep=sleeps.append,
    )
    return client, sleeps


# =============================================================================
# Configuration
# =============================================================================

class TestConfiguration:
    """Malformed configuration fails fast at construction."""

    def test_rejects_non_redis_scheme(self):
        with pytest.raises(CacheConfigError):
            CacheClient(CacheConfig(url="http://localhost:6379"))

    def test_rejects_missing_url_without_fallback(self):
        with pytest.raises(CacheConfigError):
            CacheClient(CacheConfig(url=None, allow_memory_fallback=False))

    @pytest.mark.parametrize("field_name", ["error_threshold", "reconnect_threshold"])
    def test_rejects_non_positive_thresholds(self, field_name):
        config = CacheConfig(url="redis://localhost:6379/0")
        setattr(config, field_name, 0)
        with pytest.raises(CacheConfigError):
            CacheClient(config, redis_factory=lambda c: object())

    def test_rejects_non_positive_window(self):
        config = CacheConfig(url="redis://localhost:6379/0", error_window_seconds=0)
        with pytest.raises(CacheConfigError):
            CacheClient(config, redis_factory=lambda c: object())

    def test_config_error_is_a_cache_error(self):
        assert issubclass(CacheConfigError, CacheError)

    def test_no_url_starts_in_memory_mode(self):
        client = CacheClient(CacheConfig(url=None))
        assert client.mode is CacheMode.MEMORY
        assert client.set("k", "v") is True
        assert client.get("k") == "v"

    def test_safe_url_hides_password(self):
        config = CacheConfig(url="redis://:s3cret@cache.internal:6380/2")
        assert "s3cret" not in config.safe_url
        assert config.safe_url == "redis://cache.internal:6380/2"

    def test_redis_factory_does_not_connect(self):
        # redis-py connects lazily, so building a client for an unreachable host is instant
        client = redis_from_config(CacheConfig(url="redis://unreachable.invalid:6379/0"))
        assert isinstance(client, redis.Redis)

    def test_from_settings(self):
        from config.settings import Settings

        settings = Settings(redis_url="redis://localhost:6379/1", fuse_error_threshold=4)
        config = CacheConfig.from_settings(settings)
        assert config.url == "redis://localhost:6379/1"
        assert config.error_threshold == 4
        assert config.reconnect_threshold == settings.fuse_reconnect_threshold


# =============================================================================
# Retry and fuse
# =============================================================================

class TestRetryAndFuse:
    """Connectivity errors are retried and eventually trip the fuse."""

    def test_healthy_backend_serves_operations(self, redis_cache, flaky_redis):
        redis_cache.set("prefetch:test", "payload", ex=60)
        assert redis_cache.get("prefetch:test") == "payload"
        assert redis_cache.mode is CacheMode.REDIS
        assert flaky_redis.store.get("prefetch:test") == "payload"

    def test_transient_error_is_retried_transparently(self, redis_cache, flaky_redis):
        flaky_redis.store.set("k", "v")
        flaky_redis.fail_next(3)

        assert redis_cache.get("k") == "v"
        assert redis_cache.mode is CacheMode.REDIS
        assert len(redis_cache.sleeps) == 3
        assert redis_cache.get_stats()["errors"] == 3

    def test_error_threshold_trips_fuse(self, redis_cache, flaky_redis):
        """Scenario: ten consecutive failures switch the client to memory."""
        flaky_redis.down = True

        assert redis_cache.get("anything") is None

        assert redis_cache.mode is CacheMode.FALLBACK
        assert redis_cache.fused
        assert flaky_redis.calls == 10
        assert flaky_redis.connection_pool.disconnected

    def test_operations_after_fuse_never_touch_redis(self, redis_cache, flaky_redis):
        flaky_redis.down = True
        redis_cache.get("anything")
        calls = flaky_redis.calls

        assert redis_cache.set("k", "v") is True
        assert redis_cache.get("k") == "v"
        assert flaky_redis.calls == calls

    def test_fuse_is_one_way(self, redis_cache, flaky_redis):
        flaky_redis.down = True
        redis_cache.get("anything")
        flaky_redis.down = False

        redis_cache.set("k", "v")
        assert redis_cache.mode is CacheMode.FALLBACK
        assert flaky_redis.store.get("k") is None

    def test_reconnect_threshold_trips_fuse(self, redis_config, flaky_redis, clock):
        redis_config.error_threshold = 100
        redis_config.reconnect_threshold = 3
        client, _ = make_client(redis_config, flaky_redis, clock)
        flaky_redis.down = True

        client.get("anything")

        assert client.fused
        assert "reconnects" in client.get_stats()["fuse"]["reason"]
        assert flaky_redis.calls == 3

    def test_default_thresholds_trip_on_errors_first(self, redis_cache, flaky_redis):
        flaky_redis.down = True

        redis_cache.get("anything")

        stats = redis_cache.get_stats()
        assert "errors" in stats["fuse"]["reason"]
        assert stats["retries"] <= stats["errors"]

    def test_error_window_resets(self, redis_config, flaky_redis, clock):
        redis_config.error_threshold = 3
        client, _ = make_client(redis_config, flaky_redis, clock)

        flaky_redis.fail_next(2)
        client.get("k")
        clock.advance(61)
        flaky_redis.fail_next(2)
        client.get("k")

        assert not client.fused
        assert client.get_stats()["fuse"]["errors"]["count"] == 2

    def test_errors_within_window_accumulate_across_calls(self, redis_config, flaky_redis, clock):
        redis_config.error_threshold = 3
        client, _ = make_client(redis_config, flaky_redis, clock)

        flaky_redis.fail_next(2)
        client.get("k")
        clock.advance(10)
        flaky_redis.fail_next(1)
        client.get("k")

        assert client.fused

    def test_backoff_grows_and_is_capped(self, flaky_redis, clock):
        config = CacheConfig(
            url="redis://localhost:6379/0",
            retry_base_delay=0.1,
            retry_max_delay=0.4,
            retry_jitter=0,
            error_threshold=50,
            reconnect_threshold=50,
        )
        client, sleeps = make_client(config, flaky_redis, clock)
        flaky_redis.fail_next(5)

        client.get("k")

        assert sleeps == pytest.approx([0.1, 0.2, 0.4, 0.4, 0.4])

    def test_reconnect_logs_are_throttled(self, redis_config, flaky_redis, clock, caplog):
        redis_config.error_threshold = 50
        redis_config.reconnect_threshold = 50
        client, _ = make_client(redis_config, flaky_redis, clock)
        flaky_redis.fail_next(5)

        with caplog.at_level(logging.WARNING, logger="cache.client"):
            client.get("k")

        retry_logs = [r for r in caplog.records if "retry attempt" in r.getMessage()]
        assert len(retry_logs) == 1

    def test_manual_trip(self, redis_cache):
        assert redis_cache.trip_fuse("maintenance") is True
        assert redis_cache.trip_fuse("again") is False
        assert redis_cache.get_stats()["fuse"]["reason"] == "maintenance"


# =============================================================================
# Non-connectivity errors
# =============================================================================

class BrokenRedis:
    def get(self, key):
        raise redis.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")


class TestBackendErrors:

    def test_response_error_surfaces_as_cache_error(self, redis_config, clock):
        client, sleeps = make_client(redis_config, BrokenRedis(), clock)

        with pytest.raises(CacheError):
            client.get("k")
        assert sleeps == []
        assert not client.fused

    def test_wrong_type_in_memory_mode(self, memory_cache):
        memory_cache.hset("h", "field", "1")
        with pytest.raises(CacheError):
            memory_cache.get("h")


# =============================================================================
# Operations
# =============================================================================

class TestOperations:

    def test_set_if_absent(self, memory_cache):
        assert memory_cache.set_if_absent("lock:a", "1", ttl=5) is True
        assert memory_cache.set_if_absent("lock:a", "2", ttl=5) is False
        assert memory_cache.get("lock:a") == "1"

    def test_fractional_ttl_rounds_up(self, memory_cache):
        memory_cache.set("k", "v", ex=1.2)
        assert memory_cache.ttl("k") == 2

    def test_fractional_expire_rounds_up(self, redis_cache, flaky_redis):
        redis_cache.set("k", "v")
        assert redis_cache.expire("k", 0.5)
        assert redis_cache.get("k") == "v"
        assert flaky_redis.store.ttl("k") == 1

    def test_json_helpers(self, memory_cache):
        memory_cache.set_json("doc", {"items": [1, 2]})
        assert memory_cache.get_json("doc") == {"items": [1, 2]}
        memory_cache.set("bad", "{not json")
        assert memory_cache.get_json("bad", default="fallback") == "fallback"
        assert memory_cache.get_json("missing", default=[]) == []

    def test_delete_without_keys(self, memory_cache):
        assert memory_cache.delete() == 0

    def test_stats_shape(self, memory_cache):
        memory_cache.get("k")
        stats = memory_cache.get_stats()
        assert stats["mode"] == "memory"
        assert stats["calls"] == 1
        assert stats["fuse"]["tripped"] is False


def test_shared_client_is_built_once_under_concurrency(monkeypatch):
    built = []

    class SlowClient(CacheClient):
        def __init__(self, *args, **kwargs):
            time.sleep(0.05)
            super().__init__(*args, **kwargs)
            built.append(self)

    monkeypatch.setattr(client_module, "_cache_client", None)
    monkeypatch.setattr(client_module, "CacheClient", SlowClient)

    runners = 6
    barrier = threading.Barrier(runners)
    seen = []

    def first_request():
        barrier.wait()
        seen.append(client_module.get_cache_client())

    threads = [threading.Thread(target=first_request) for _ in range(runners)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(built) == 1
    assert len(seen) == runners
    assert all(client is built[0] for client in seen)
