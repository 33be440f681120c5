"""
Core cache data structures: store entries, fuse counters and errors.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class CacheError(Exception):
    """Raised when a cache operation fails for a non-connectivity reason."""
    pass


class CacheConfigError(CacheError):
    """Raised at construction when the cache configuration is malformed."""
    pass


class CacheMode(Enum):
    """Which store is serving operations."""
    REDIS = "redis"         # Primary backend
    MEMORY = "memory"       # No backend configured
    FALLBACK = "fallback"   # Fuse tripped, in-memory for the process lifetime


class EntryKind(Enum):
    """Redis data type emulated by a memory store entry."""
    STRING = "string"
    HASH = "hash"
    LIST = "list"
    ZSET = "zset"


@dataclass
class CacheEntry:
    """
    A single key held by the in-memory store.

    Expiry is checked lazily on access; there is no background sweep.
    """
    value: Any
    kind: EntryKind = EntryKind.STRING
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry is past its TTL."""
        return self.expires_at is not None and now >= self.expires_at

    def ttl_seconds(self, now: float) -> int:
        """Remaining TTL in whole seconds, -1 when the key has no expiry."""
        if self.expires_at is None:
            return -1
        return max(0, int(round(self.expires_at - now)))


@dataclass
class RollingCounter:
    """
    Fixed-window event counter used by the fuse.

    The window starts at the first event and resets once an event arrives
    after the window has elapsed.
    """
    threshold: int
    window_seconds: float
    clock: Callable[[], float] = time.monotonic
    count: int = 0
    window_start: Optional[float] = None

    def record(self) -> int:
        """Record one event and return the count within the current window."""
        now = self.clock()
        if self.window_start is None or now - self.window_start > self.window_seconds:
            self.window_start = now
            self.count = 0
        self.count += 1
        return self.count

    @property
    def exceeded(self) -> bool:
        return self.count >= self.threshold

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "threshold": self.threshold,
            "windowSeconds": self.window_seconds,
        }


@dataclass
class FuseState:
    """Tracks whether the one-way switch to the fallback store has happened."""
    errors: RollingCounter
    reconnects: RollingCounter
    tripped: bool = False
    tripped_at: Optional[float] = None
    reason: Optional[str] = None
    last_error: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "tripped": self.tripped,
            "trippedAt": self.tripped_at,
            "reason": self.reason,
            "lastError": self.last_error,
            "errors": self.errors.to_dict(),
            "reconnects": self.reconnects.to_dict(),
        }
