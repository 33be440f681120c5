"""
Process-local cache store with the same operation set as the Redis backend.

Used when no Redis URL is configured (tests, local runs) and as the fallback
target once the client's fuse trips. Semantics follow redis-py with
``decode_responses=True``; expiry is best-effort and evaluated on access.
"""
import fnmatch
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from .core import CacheEntry, CacheError, EntryKind

logger = logging.getLogger("cache.memory")

WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"

# Published messages kept for inspection (no real subscribers in-process)
PUBLISHED_HISTORY = 100


def _encode(value: Any) -> Union[str, bytes]:
    """Coerce a value the way redis-py encodes command arguments."""
    if isinstance(value, (str, bytes)):
        return value
    if isinstance(value, bool):
        raise CacheError("Invalid input of type: 'bool'. Convert to a bytes, string, int or float first.")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    raise CacheError(
        f"Invalid input of type: '{type(value).__name__}'. "
        "Convert to a bytes, string, int or float first."
    )


def _score_bound(value: Union[str, float, int]) -> float:
    """Parse a sorted-set score bound ("-inf", "+inf" or a number)."""
    try:
        return float(value)
    except (TypeError, ValueError):
        raise CacheError("min or max is not a float")


def _slice_range(items: list, start: int, end: int) -> list:
    """Redis-style inclusive range with negative index support."""
    length = len(items)
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    if start > end or start >= length:
        return []
    return items[start:end + 1]


class MemoryStore:
    """
    In-memory implementation of the cache operation set.

    Thread-safe. Values are stored as strings (or bytes), hashes as dicts,
    lists as Python lists and sorted sets as member -> score dicts.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self.published: Deque[Tuple[str, str]] = deque(maxlen=PUBLISHED_HISTORY)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _entry(self, key: str, kind: Optional[EntryKind] = None) -> Optional[CacheEntry]:
        """Return a live entry for key, dropping it if expired."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        if kind is not None and entry.kind != kind:
            raise CacheError(WRONGTYPE)
        return entry

    def _entry_or_create(self, key: str, kind: EntryKind, factory: Callable[[], Any]) -> CacheEntry:
        entry = self._entry(key, kind)
        if entry is None:
            entry = CacheEntry(value=factory(), kind=kind)
            self._data[key] = entry
        return entry

    def _expires_at(self, seconds: Optional[Union[int, float]]) -> Optional[float]:
        if seconds is None:
            return None
        if seconds <= 0:
            raise CacheError("invalid expire time in 'set' command")
        return self._clock() + float(seconds)

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[Union[str, bytes]]:
        with self._lock:
            entry = self._entry(key, EntryKind.STRING)
            return entry.value if entry else None

    def set(
        self,
        key: str,
        value: Any,
        ex: Optional[Union[int, float]] = None,
        nx: bool = False,
    ) -> Optional[bool]:
        """Set a string value. With nx=True returns None when the key exists."""
        encoded = _encode(value)
        with self._lock:
            if nx and self._entry(key) is not None:
                return None
            self._data[key] = CacheEntry(
                value=encoded,
                kind=EntryKind.STRING,
                expires_at=self._expires_at(ex),
            )
            return True

    def setex(self, key: str, seconds: Union[int, float], value: Any) -> bool:
        return bool(self.set(key, value, ex=seconds))

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entry(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def exists(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._entry(key) is not None)

    def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            entry = self._entry(key, EntryKind.STRING)
            try:
                current = int(entry.value) if entry else 0
            except (TypeError, ValueError):
                raise CacheError("value is not an integer or out of range")
            current += amount
            if entry is None:
                self._data[key] = CacheEntry(value=str(current))
            else:
                entry.value = str(current)
            return current

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    def hget(self, name: str, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entry(name, EntryKind.HASH)
            return entry.value.get(str(key)) if entry else None

    def hset(
        self,
        name: str,
        key: Optional[str] = None,
        value: Any = None,
        mapping: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Set one field and/or a mapping of fields. Returns new field count."""
        items: Dict[str, Any] = {}
        if key is not None:
            items[str(key)] = value
        if mapping:
            items.update({str(k): v for k, v in mapping.items()})
        if not items:
            raise CacheError("'hset' with no key value pairs")
        with self._lock:
            entry = self._entry_or_create(name, EntryKind.HASH, dict)
            added = 0
            for field_name, field_value in items.items():
                if field_name not in entry.value:
                    added += 1
                entry.value[field_name] = _encode(field_value)
            return added

    def hgetall(self, name: str) -> Dict[str, str]:
        with self._lock:
            entry = self._entry(name, EntryKind.HASH)
            return dict(entry.value) if entry else {}

    def hdel(self, name: str, *keys: str) -> int:
        with self._lock:
            entry = self._entry(name, EntryKind.HASH)
            if entry is None:
                return 0
            removed = 0
            for key in keys:
                if entry.value.pop(str(key), None) is not None:
                    removed += 1
            if not entry.value:
                del self._data[name]
            return removed

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def lpush(self, name: str, *values: Any) -> int:
        with self._lock:
            entry = self._entry_or_create(name, EntryKind.LIST, list)
            for value in values:
                entry.value.insert(0, _encode(value))
            return len(entry.value)

    def rpush(self, name: str, *values: Any) -> int:
        with self._lock:
            entry = self._entry_or_create(name, EntryKind.LIST, list)
            entry.value.extend(_encode(value) for value in values)
            return len(entry.value)

    def lrange(self, name: str, start: int, end: int) -> List[str]:
        with self._lock:
            entry = self._entry(name, EntryKind.LIST)
            return list(_slice_range(entry.value, start, end)) if entry else []

    def ltrim(self, name: str, start: int, end: int) -> bool:
        with self._lock:
            entry = self._entry(name, EntryKind.LIST)
            if entry is None:
                return True
            entry.value[:] = _slice_range(entry.value, start, end)
            if not entry.value:
                del self._data[name]
            return True

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    def zadd(self, name: str, mapping: Dict[str, float]) -> int:
        with self._lock:
            entry = self._entry_or_create(name, EntryKind.ZSET, dict)
            added = 0
            for member, score in mapping.items():
                member = str(_encode(member))
                if member not in entry.value:
                    added += 1
                entry.value[member] = float(score)
            return added

    def zincrby(self, name: str, amount: float, value: str) -> float:
        with self._lock:
            entry = self._entry_or_create(name, EntryKind.ZSET, dict)
            member = str(_encode(value))
            entry.value[member] = entry.value.get(member, 0.0) + float(amount)
            return entry.value[member]

    def zcard(self, name: str) -> int:
        with self._lock:
            entry = self._entry(name, EntryKind.ZSET)
            return len(entry.value) if entry else 0

    def _zrange_by_score(
        self,
        name: str,
        low: float,
        high: float,
        descending: bool,
        start: Optional[int],
        num: Optional[int],
        withscores: bool,
    ) -> list:
        with self._lock:
            entry = self._entry(name, EntryKind.ZSET)
            if entry is None:
                return []
            items = [(m, s) for m, s in entry.value.items() if low <= s <= high]
        items.sort(key=lambda item: (item[1], item[0]), reverse=descending)
        if start is not None and num is not None:
            items = items[start:] if num < 0 else items[start:start + num]
        if withscores:
            return items
        return [member for member, _ in items]

    def zrangebyscore(
        self,
        name: str,
        min: Union[str, float],
        max: Union[str, float],
        start: Optional[int] = None,
        num: Optional[int] = None,
        withscores: bool = False,
    ) -> list:
        return self._zrange_by_score(
            name, _score_bound(min), _score_bound(max), False, start, num, withscores
        )

    def zrevrangebyscore(
        self,
        name: str,
        max: Union[str, float],
        min: Union[str, float],
        start: Optional[int] = None,
        num: Optional[int] = None,
        withscores: bool = False,
    ) -> list:
        return self._zrange_by_score(
            name, _score_bound(min), _score_bound(max), True, start, num, withscores
        )

    # ------------------------------------------------------------------
    # Keyspace
    # ------------------------------------------------------------------

    def expire(self, name: str, time: Union[int, float]) -> bool:
        with self._lock:
            entry = self._entry(name)
            if entry is None:
                return False
            if time <= 0:
                del self._data[name]
                return True
            entry.expires_at = self._clock() + float(time)
            return True

    def ttl(self, name: str) -> int:
        """Remaining TTL: -2 if the key is missing, -1 if it has no expiry."""
        with self._lock:
            entry = self._entry(name)
            if entry is None:
                return -2
            return entry.ttl_seconds(self._clock())

    def keys(self, pattern: str = "*") -> List[str]:
        with self._lock:
            return [
                key for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._entry(key) is not None
            ]

    def publish(self, channel: str, message: Any) -> int:
        """No in-process subscribers; the message is kept for inspection."""
        self.published.append((channel, str(_encode(message))))
        return 0

    def flushall(self) -> bool:
        with self._lock:
            self._data.clear()
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self.keys())
