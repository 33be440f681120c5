"""
Resilient caching layer: Redis with retries, a one-way fuse to an
in-memory store, and advisory locks for scheduled jobs.
"""
from .core import CacheEntry, CacheError, CacheConfigError, CacheMode, RollingCounter
from .memory import MemoryStore
from .client import CacheClient, CacheConfig, get_cache_client
from .lock import LockCoordinator
from .ttl_policies import (
    TTL_CONFIG,
    DataCategory,
    get_ttl_for_category,
    backoff_delay,
)

__all__ = [
    # Core types
    "CacheEntry",
    "CacheError",
    "CacheConfigError",
    "CacheMode",
    "RollingCounter",
    # Stores
    "MemoryStore",
    "CacheClient",
    "CacheConfig",
    "get_cache_client",
    # Locks
    "LockCoordinator",
    # TTL policies
    "TTL_CONFIG",
    "DataCategory",
    "get_ttl_for_category",
    "backoff_delay",
]
