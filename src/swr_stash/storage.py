"""
Storage backends for the stash.

Provides InMemCache (in-memory), RedisCache, and the CacheStorage protocol.
Storage holds raw CacheEntry objects and never interprets freshness; that is
the policy engine's job.
"""

from __future__ import annotations

import enum
import pickle
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Protocol

try:
    import redis
except ImportError:
    redis = None  # type: ignore


# ============================================================================
# Cache Entry
# ============================================================================


class EntryState(enum.Enum):
    """Freshness of an entry at a given instant."""

    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass
class CacheEntry:
    """One cached result with the options it was written with."""

    value: Any
    stored_at: float  # Unix timestamp
    max_age: float
    stale_while_revalidate: float = 0

    @property
    def fresh_until(self) -> float:
        return self.stored_at + self.max_age

    @property
    def stale_until(self) -> float:
        return self.stored_at + self.max_age + self.stale_while_revalidate

    def state(self, now: float | None = None) -> EntryState:
        """Classify the entry. The three states partition time."""
        if now is None:
            now = time.time()
        if now < self.fresh_until:
            return EntryState.FRESH
        if now < self.stale_until:
            return EntryState.STALE
        return EntryState.EXPIRED

    def is_fresh(self, now: float | None = None) -> bool:
        return self.state(now) is EntryState.FRESH

    def is_stale(self, now: float | None = None) -> bool:
        return self.state(now) is EntryState.STALE

    def is_expired(self, now: float | None = None) -> bool:
        return self.state(now) is EntryState.EXPIRED

    def age(self, now: float | None = None) -> float:
        """Get age of entry in seconds."""
        if now is None:
            now = time.time()
        return now - self.stored_at


Matcher = Callable[[Any, CacheEntry], bool]

DEFAULT_REDIS_PREFIX = "swr_stash:"


# ============================================================================
# Storage Protocol - Common interface for all backends
# ============================================================================


class CacheStorage(Protocol):
    """
    Protocol for stash storage backends.

    Any object implementing these methods can back a Stash. Backends used with
    AsyncStash may return awaitables from every method instead.

    Example:
        class MyStorage:
            def size(self) -> int: ...
            def has(self, key) -> bool: ...
            def get(self, key) -> CacheEntry | None: ...
            # ... implement the other methods
    """

    def size(self) -> int:
        """Number of stored entries."""
        ...

    def has(self, key: Hashable) -> bool:
        """True if an entry is stored for key, fresh or not."""
        ...

    def get(self, key: Hashable) -> CacheEntry | None:
        """Raw entry for key, or None."""
        ...

    def set(self, key: Hashable, entry: CacheEntry) -> "CacheStorage":
        """Insert or overwrite the entry for key. Returns the storage."""
        ...

    def delete(self, key: Hashable) -> bool:
        """Remove key. True if an entry existed."""
        ...

    def clear_matching(self, matcher: Matcher) -> None:
        """Remove every entry for which matcher(key, entry) is true."""
        ...

    def clear(self) -> None:
        """Remove all entries."""
        ...


STORAGE_METHODS = ("size", "has", "get", "set", "delete", "clear_matching", "clear")


def validate_cache_storage(storage: Any) -> bool:
    """
    Validate that an object implements the CacheStorage protocol.
    Useful for debugging custom storage implementations.

    Returns:
        True if valid, False otherwise
    """
    return all(
        hasattr(storage, method) and callable(getattr(storage, method))
        for method in STORAGE_METHODS
    )


# ============================================================================
# InMemCache - In-memory storage
# ============================================================================


class InMemCache:
    """
    Thread-safe in-memory entry table.

    Attributes:
        _data: internal entry map
        _lock: re-entrant lock to protect concurrent access
    """

    def __init__(self):
        self._data: dict[Hashable, CacheEntry] = {}
        self._lock = threading.RLock()

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def has(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def get(self, key: Hashable) -> CacheEntry | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: Hashable, entry: CacheEntry) -> InMemCache:
        with self._lock:
            self._data[key] = entry
        return self

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear_matching(self, matcher: Matcher) -> None:
        """Remove matching entries, visiting a snapshot taken under the lock."""
        with self._lock:
            for key, entry in list(self._data.items()):
                if matcher(key, entry):
                    del self._data[key]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    @property
    def lock(self):
        """Get the internal lock (for advanced usage)."""
        return self._lock


# ============================================================================
# RedisCache - Redis-backed storage
# ============================================================================


class RedisCache:
    """
    Redis-backed entry storage.

    Entries are pickled together with their original key. Lookups compare the
    stored key with the requested one, so keys whose str() collide (1 and "1")
    never read, report or delete each other's entries; they do overwrite each
    other on set, since both live under the same Redis key. size() and clear()
    cover every key under `prefix`; clear_matching() skips values this class
    did not write.
    Redis-side TTLs are not used: entries live until deleted, like every
    other backend.

    Example:
        import redis
        client = redis.Redis(host='localhost', port=6379)
        storage = RedisCache(client, prefix="app:")
        stash = Stash(storage)
    """

    def __init__(self, redis_client: Any, prefix: str = DEFAULT_REDIS_PREFIX):
        """
        Initialize Redis storage.

        Args:
            redis_client: Redis client instance
            prefix: Key prefix for namespacing; must not be empty, since
                size/clear/clear_matching scan everything under it
        """
        if redis is None:
            raise ImportError("redis package required. Install: pip install redis")
        if not prefix:
            raise ValueError("prefix must not be empty")
        self.client = redis_client
        self.prefix = prefix

    def _make_key(self, key: Hashable) -> str:
        """Add prefix to key."""
        return f"{self.prefix}{key}"

    def _scan(self) -> list:
        # Materialised so callers can delete while walking
        return list(self.client.scan_iter(match=f"{self.prefix}*"))

    @staticmethod
    def _load(data: bytes | None) -> tuple[Any, CacheEntry] | None:
        """Decode a stored (key, entry) pair; None for anything else."""
        if data is None:
            return None
        try:
            payload = pickle.loads(data)
        except Exception:
            return None
        if (
            not isinstance(payload, tuple)
            or len(payload) != 2
            or not isinstance(payload[1], CacheEntry)
        ):
            return None
        return payload

    def _load_own(self, key: Hashable) -> CacheEntry | None:
        loaded = self._load(self.client.get(self._make_key(key)))
        if loaded is None:
            return None
        stored_key, entry = loaded
        if stored_key != key:
            return None
        return entry

    def size(self) -> int:
        return len(self._scan())

    def has(self, key: Hashable) -> bool:
        return self._load_own(key) is not None

    def get(self, key: Hashable) -> CacheEntry | None:
        return self._load_own(key)

    def set(self, key: Hashable, entry: CacheEntry) -> RedisCache:
        self.client.set(self._make_key(key), pickle.dumps((key, entry)))
        return self

    def delete(self, key: Hashable) -> bool:
        if self._load_own(key) is None:
            return False
        return bool(self.client.delete(self._make_key(key)))

    def clear_matching(self, matcher: Matcher) -> None:
        for redis_key in self._scan():
            loaded = self._load(self.client.get(redis_key))
            if loaded is None:
                continue
            key, entry = loaded
            if matcher(key, entry):
                self.client.delete(redis_key)

    def clear(self) -> None:
        keys = self._scan()
        if keys:
            self.client.delete(*keys)
