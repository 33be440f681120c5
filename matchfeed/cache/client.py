"""
Fault-tolerant cache client.

Wraps a Redis connection with exponential-backoff retries and a one-way
fuse: once connectivity errors (or reconnect attempts) cross a threshold
inside their window, the client disconnects from Redis and serves every
later call from an in-memory store for the rest of the process lifetime.
"""
import json
import math
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry
from tenacity import Retrying, RetryCallState, retry_if_exception_type, wait_exponential, wait_random

from .core import CacheConfigError, CacheError, CacheMode, FuseState, RollingCounter
from .memory import MemoryStore

logger = logging.getLogger("cache.client")

# Errors that count towards the fuse and are retried
CONNECTIVITY_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError)

REDIS_SCHEMES = ("redis", "rediss", "unix")


@dataclass
class CacheConfig:
    """Connection, retry and fuse settings for a CacheClient."""
    url: Optional[str] = None
    use_memory: bool = False
    allow_memory_fallback: bool = True
    connect_timeout: float = 10.0
    socket_timeout: float = 5.0
    retry_base_delay: float = 0.1
    retry_max_delay: float = 5.0
    retry_jitter: float = 0.3
    error_threshold: int = 10
    error_window_seconds: float = 60.0
    reconnect_threshold: int = 20
    reconnect_window_seconds: float = 60.0
    reconnect_log_window_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "CacheConfig":
        """Build a config from the application Settings object."""
        return cls(
            url=settings.redis_url,
            use_memory=settings.use_memory_cache,
            allow_memory_fallback=settings.allow_memory_fallback,
            connect_timeout=settings.redis_connect_timeout,
            socket_timeout=settings.redis_socket_timeout,
            retry_base_delay=settings.cache_retry_base_delay,
            retry_max_delay=settings.cache_retry_max_delay,
            retry_jitter=settings.cache_retry_jitter,
            error_threshold=settings.fuse_error_threshold,
            error_window_seconds=settings.fuse_error_window_seconds,
            reconnect_threshold=settings.fuse_reconnect_threshold,
            reconnect_window_seconds=settings.fuse_reconnect_window_seconds,
            reconnect_log_window_seconds=settings.reconnect_log_window_seconds,
        )

    @property
    def wants_memory(self) -> bool:
        return self.use_memory or not self.url

    def validate(self) -> None:
        """Raise CacheConfigError if the configuration cannot be used."""
        if self.url:
            scheme = urlparse(self.url).scheme
            if scheme not in REDIS_SCHEMES:
                raise CacheConfigError(
                    f"Redis URL must use one of {', '.join(s + '://' for s in REDIS_SCHEMES)} "
                    f"(got {scheme or 'no scheme'!r})"
                )
        elif not self.use_memory and not self.allow_memory_fallback:
            raise CacheConfigError("redis_url is required when memory fallback is disabled")

        for name in ("error_threshold", "reconnect_threshold"):
            if getattr(self, name) < 1:
                raise CacheConfigError(f"{name} must be at least 1")
        for name in (
            "error_window_seconds",
            "reconnect_window_seconds",
            "connect_timeout",
            "socket_timeout",
        ):
            if getattr(self, name) <= 0:
                raise CacheConfigError(f"{name} must be positive")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0 or self.retry_jitter < 0:
            raise CacheConfigError("retry delays must not be negative")

    @property
    def safe_url(self) -> str:
        """URL without credentials, for logging."""
        if not self.url:
            return "memory://"
        parsed = urlparse(self.url)
        port = f":{parsed.port}" if parsed.port else ""
        return f"{parsed.scheme}://{parsed.hostname or ''}{port}{parsed.path}"


def _whole_seconds(value: Optional[Union[int, float]]) -> Optional[int]:
    """Redis expiry arguments must be whole seconds; round partial seconds up."""
    if value is None:
        return None
    return int(math.ceil(value))


def redis_from_config(config: CacheConfig) -> redis.Redis:
    """
    Create the redis-py client. Connections are opened lazily on first use.

    redis-py's own retry layer is disabled; retries are handled by CacheClient.
    """
    return redis.Redis.from_url(
        config.url,
        decode_responses=True,
        socket_connect_timeout=config.connect_timeout,
        socket_timeout=config.socket_timeout,
        retry=Retry(NoBackoff(), 0),
    )


class CacheClient:
    """
    Cache operations with retry, backoff and a one-way fuse to memory.

    All operations follow redis-py semantics (``decode_responses=True``).
    Connectivity errors are never raised to callers: they are retried until
    either the backend answers or the fuse trips and the fallback store
    answers. Other backend errors are raised as CacheError.

    Usage:
        client = CacheClient(CacheConfig(url="redis://localhost:6379/0"))
        client.set("prefetch:rss", "{}", ex=60)
        client.get("prefetch:rss")
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        fallback_factory: Callable[[], Any] = MemoryStore,
        redis_factory: Callable[[CacheConfig], Any] = redis_from_config,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            config: Connection and fuse settings (defaults to memory mode)
            fallback_factory: Builds the in-memory store (memory mode and fuse)
            redis_factory: Builds the Redis connection from the config
            clock: Monotonic clock used by the fuse windows
            sleep: Sleep function used between retries
        """
        self.config = config or CacheConfig(use_memory=True)
        self.config.validate()

        self._fallback_factory = fallback_factory
        self._clock = clock
        self._sleep = sleep
        self._state_lock = threading.Lock()
        self._last_reconnect_log: Optional[float] = None

        self._fuse = FuseState(
            errors=RollingCounter(
                threshold=self.config.error_threshold,
                window_seconds=self.config.error_window_seconds,
                clock=clock,
            ),
            reconnects=RollingCounter(
                threshold=self.config.reconnect_threshold,
                window_seconds=self.config.reconnect_window_seconds,
                clock=clock,
            ),
        )
        self._stats = {"calls": 0, "retries": 0, "errors": 0}

        if self.config.wants_memory:
            logger.warning("No Redis URL configured (or memory forced); using in-memory cache")
            self._backend = fallback_factory()
            self._mode = CacheMode.MEMORY
        else:
            try:
                self._backend = redis_factory(self.config)
            except ValueError as e:
                raise CacheConfigError(f"Invalid Redis configuration: {e}") from e
            self._mode = CacheMode.REDIS
            logger.info(f"Redis cache configured: {self.config.safe_url}")

        self._backoff = (
            wait_exponential(multiplier=self.config.retry_base_delay, max=self.config.retry_max_delay)
            + wait_random(0, self.config.retry_jitter)
        )

    # ------------------------------------------------------------------
    # Mode and fuse
    # ------------------------------------------------------------------

    @property
    def mode(self) -> CacheMode:
        return self._mode

    @property
    def fused(self) -> bool:
        return self._fuse.tripped

    @property
    def backend(self) -> Any:
        """The store currently serving operations."""
        return self._backend

    def trip_fuse(self, reason: str) -> bool:
        """
        Switch permanently to the in-memory store.

        Returns:
            True if this call tripped the fuse, False if it already was
        """
        with self._state_lock:
            if self._fuse.tripped or self._mode is not CacheMode.REDIS:
                return False
            old_backend = self._backend
            self._backend = self._fallback_factory()
            self._mode = CacheMode.FALLBACK
            self._fuse.tripped = True
            self._fuse.tripped_at = time.time()
            self._fuse.reason = reason

        logger.error(f"Redis fuse triggered ({reason}): switching to in-memory cache")
        pool = getattr(old_backend, "connection_pool", None)
        try:
            if pool is not None:
                pool.disconnect()
            elif hasattr(old_backend, "close"):
                old_backend.close()
        except Exception as e:
            logger.debug(f"Ignoring error while disconnecting Redis: {e}")
        return True

    def _after_failed_attempt(self, retry_state: RetryCallState) -> None:
        """Count a connectivity error towards the fuse."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        with self._state_lock:
            self._stats["errors"] += 1
            self._fuse.last_error = str(error)
            count = self._fuse.errors.record()
        if count >= self._fuse.errors.threshold:
            self.trip_fuse(f"{count} errors within {self._fuse.errors.window_seconds:.0f}s")

    def _before_reconnect(self, retry_state: RetryCallState) -> None:
        """
        Count a reconnect attempt and log it, at most once per log window.

        Every failed attempt that is retried is a reconnect, so this counter
        never runs ahead of the error counter.
        """
        with self._state_lock:
            self._stats["retries"] += 1
            count = self._fuse.reconnects.record()
            now = self._clock()
            should_log = (
                self._last_reconnect_log is None
                or now - self._last_reconnect_log >= self.config.reconnect_log_window_seconds
            )
            if should_log:
                self._last_reconnect_log = now

        if should_log:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Redis connection failed ({self._fuse.last_error}); "
                f"retry attempt {retry_state.attempt_number}, waiting {delay:.2f}s (throttled logs)"
            )
        if count >= self._fuse.reconnects.threshold:
            self.trip_fuse(f"{count} reconnects within {self._fuse.reconnects.window_seconds:.0f}s")

    def _wait(self, retry_state: RetryCallState) -> float:
        # Once fused the next attempt hits memory, no need to back off
        if self._fuse.tripped:
            return 0
        return self._backoff(retry_state)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _invoke(self, op: str, args: tuple, kwargs: dict) -> Any:
        backend = self._backend
        try:
            return getattr(backend, op)(*args, **kwargs)
        except CONNECTIVITY_ERRORS:
            raise
        except CacheError:
            raise
        except redis.exceptions.RedisError as e:
            raise CacheError(f"{op} failed: {e}") from e

    def _call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        """Run one operation, retrying connectivity errors until served."""
        self._stats["calls"] += 1
        if self._mode is not CacheMode.REDIS:
            return self._invoke(op, args, kwargs)

        retrying = Retrying(
            retry=retry_if_exception_type(CONNECTIVITY_ERRORS),
            wait=self._wait,
            after=self._after_failed_attempt,
            before_sleep=self._before_reconnect,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._invoke, op, args, kwargs)

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        return bool(self._call("ping"))

    def get(self, key: str) -> Optional[Union[str, bytes]]:
        return self._call("get", key)

    def set(
        self,
        key: str,
        value: Any,
        ex: Optional[Union[int, float]] = None,
        nx: bool = False,
    ) -> Optional[bool]:
        return self._call("set", key, value, ex=_whole_seconds(ex), nx=nx)

    def setex(self, key: str, seconds: Union[int, float], value: Any) -> bool:
        return bool(self._call("setex", key, _whole_seconds(seconds), value))

    def set_if_absent(self, key: str, value: Any, ttl: Union[int, float]) -> bool:
        """Atomically create key with a TTL only if it does not exist."""
        return bool(self._call("set", key, value, ex=_whole_seconds(ttl), nx=True))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self._call("delete", *keys)

    def exists(self, *keys: str) -> int:
        return self._call("exists", *keys)

    def incr(self, key: str, amount: int = 1) -> int:
        return self._call("incr", key, amount)

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def hget(self, name: str, key: str) -> Optional[str]:
        return self._call("hget", name, key)

    def hset(
        self,
        name: str,
        key: Optional[str] = None,
        value: Any = None,
        mapping: Optional[Dict[str, Any]] = None,
    ) -> int:
        return self._call("hset", name, key, value, mapping=mapping)

    def hgetall(self, name: str) -> Dict[str, str]:
        return self._call("hgetall", name)

    def hdel(self, name: str, *keys: str) -> int:
        return self._call("hdel", name, *keys)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def lpush(self, name: str, *values: Any) -> int:
        return self._call("lpush", name, *values)

    def rpush(self, name: str, *values: Any) -> int:
        return self._call("rpush", name, *values)

    def lrange(self, name: str, start: int, end: int) -> List[str]:
        return self._call("lrange", name, start, end)

    def ltrim(self, name: str, start: int, end: int) -> bool:
        return self._call("ltrim", name, start, end)

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    def zadd(self, name: str, mapping: Dict[str, float]) -> int:
        return self._call("zadd", name, mapping)

    def zincrby(self, name: str, amount: float, value: str) -> float:
        return self._call("zincrby", name, amount, value)

    def zrangebyscore(self, name: str, min, max, start=None, num=None, withscores: bool = False) -> list:
        return self._call("zrangebyscore", name, min, max, start=start, num=num, withscores=withscores)

    def zrevrangebyscore(self, name: str, max, min, start=None, num=None, withscores: bool = False) -> list:
        return self._call("zrevrangebyscore", name, max, min, start=start, num=num, withscores=withscores)

    def zcard(self, name: str) -> int:
        return self._call("zcard", name)

    # ------------------------------------------------------------------
    # Keyspace and pub/sub
    # ------------------------------------------------------------------

    def expire(self, name: str, seconds: Union[int, float]) -> bool:
        return bool(self._call("expire", name, _whole_seconds(seconds)))

    def ttl(self, name: str) -> int:
        return self._call("ttl", name)

    def keys(self, pattern: str = "*") -> List[str]:
        return list(self._call("keys", pattern))

    def publish(self, channel: str, message: Any) -> int:
        return self._call("publish", channel, message)

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    def set_json(self, key: str, value: Any, ex: Optional[Union[int, float]] = None) -> Optional[bool]:
        """Serialize value as JSON and store it."""
        return self.set(key, json.dumps(value, default=str), ex=ex)

    def get_json(self, key: str, default: Any = None) -> Any:
        """Load a JSON value, returning default when missing or undecodable."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Value at {key} is not valid JSON")
            return default

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get client mode, fuse state and call counters."""
        with self._state_lock:
            return {
                "mode": self._mode.value,
                "backend": self.config.safe_url if self._mode is CacheMode.REDIS else "memory://",
                "fuse": self._fuse.to_dict(),
                **self._stats,
            }

    def close(self) -> None:
        """Release the Redis connection pool, if any."""
        if self._mode is CacheMode.REDIS and hasattr(self._backend, "close"):
            try:
                self._backend.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing Redis: {e}")


# Global cache client instance
_cache_client: Optional[CacheClient] = None
_cache_client_lock = threading.Lock()


def get_cache_client() -> CacheClient:
    """Get or create the process-wide cache client from settings."""
    global _cache_client
    if _cache_client is None:
        with _cache_client_lock:
            if _cache_client is None:
                from config.settings import settings
                _cache_client = CacheClient(CacheConfig.from_settings(settings))
    return _cache_client
