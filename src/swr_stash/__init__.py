"""
Memoizing stash with stale-while-revalidate.

Expose storage backends, the Stash / AsyncStash engines and the SWR decorator
under `swr_stash`.
"""

from .storage import (
    InMemCache,
    RedisCache,
    CacheEntry,
    CacheStorage,
    EntryState,
    validate_cache_storage,
)
from .stash import (
    Stash,
    AsyncStash,
    CacheOptions,
    ProducerContext,
    CacheConfigurationError,
    ProducerMissingError,
    ProducerTypeError,
)
from .decorators import (
    SWRCache,
    StaleWhileRevalidateCache,
    make_key,
)

__all__ = [
    "InMemCache",
    "RedisCache",
    "CacheEntry",
    "CacheStorage",
    "EntryState",
    "validate_cache_storage",
    "Stash",
    "AsyncStash",
    "CacheOptions",
    "ProducerContext",
    "CacheConfigurationError",
    "ProducerMissingError",
    "ProducerTypeError",
    "SWRCache",
    "StaleWhileRevalidateCache",
    "make_key",
]
