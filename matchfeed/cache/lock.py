"""
Advisory locks for scheduled jobs, built on the cache's set-if-absent.

The lock is best-effort: it holds only as long as its TTL, and release
does not check who acquired it. Callers that fail to acquire must skip
their work for this cycle; there is no waiting or queuing.
"""
import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .client import CacheClient
from .core import CacheError
from .ttl_policies import LOCK_PREFIX

logger = logging.getLogger("cache.lock")


class LockCoordinator:
    """
    Mutual exclusion across processes sharing one cache.

    Usage:
        locks = LockCoordinator(cache)
        with locks.hold("prefetch:sportradar", ttl=300) as acquired:
            if acquired:
                run_job()
    """

    def __init__(self, cache: CacheClient, prefix: str = LOCK_PREFIX):
        self._cache = cache
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def acquire(self, key: str, ttl: int) -> bool:
        """
        Create the lock key with a TTL only if it is absent.

        Returns:
            True if this caller obtained the lock
        """
        try:
            acquired = self._cache.set_if_absent(self._key(key), str(time.time()), ttl)
        except CacheError as e:
            logger.warning(f"Lock {key} could not be acquired: {e}")
            return False
        if acquired:
            logger.debug(f"Acquired lock {key} (ttl={ttl}s)")
        else:
            logger.info(f"Lock {key} is held by another runner")
        return acquired

    def release(self, key: str) -> None:
        """Delete the lock key. No ownership check is made."""
        try:
            self._cache.delete(self._key(key))
            logger.debug(f"Released lock {key}")
        except CacheError as e:
            logger.warning(f"Failed to release lock {key}: {e}")

    @contextmanager
    def hold(self, key: str, ttl: int) -> Iterator[bool]:
        """Acquire for the duration of the block; release only if acquired."""
        acquired = self.acquire(key, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def is_held(self, key: str) -> bool:
        return bool(self._cache.exists(self._key(key)))

    def remaining_ttl(self, key: str) -> Optional[int]:
        """Seconds until the lock expires, None if it is not held."""
        ttl = self._cache.ttl(self._key(key))
        return ttl if ttl >= 0 else None
