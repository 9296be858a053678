"""
Cache decorator for function result caching on top of a stash.

Example:
    @SWRCache.cached("product:{}", max_age=60, stale_while_revalidate=30)
    def get_product(product_id: int):
        return db.fetch_product(product_id)

    # Coroutine functions get an AsyncStash
    @SWRCache.cached("user:{user_id}", max_age=60)
    async def get_user(*, user_id: int):
        return await api.fetch_user(user_id)
"""

from __future__ import annotations

import inspect
from typing import Any, Callable, Hashable, TypeVar

from .stash import AsyncStash, CacheOptions, Stash

T = TypeVar("T")


def make_key(key: str | Callable[..., Hashable], args: tuple, kwargs: dict) -> Hashable:
    """Build a cache key from a template ("user:{}", "user:{user_id}") or a key function."""
    if callable(key):
        return key(*args, **kwargs)
    if "{" not in key:
        return key
    if args:
        # Simple format string with first arg
        return key.format(args[0])
    return key.format(**kwargs)


class StaleWhileRevalidateCache:
    """
    SWR decorator - composable with any stash and storage backend.
    Each decorated function gets its own stash unless one is passed in.
    """

    @classmethod
    def cached(
        cls,
        key: str | Callable[..., Hashable],
        max_age: float | None = None,
        stale_while_revalidate: float | None = None,
        stash: Stash | AsyncStash | None = None,
    ) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """
        SWR cache decorator.

        Args:
            key: Cache key template or generator function.
            max_age: Fresh lifetime in seconds (stash default if None).
            stale_while_revalidate: Extra seconds to serve stale data while refreshing.
            stash: Optional Stash (plain functions) or AsyncStash (coroutine functions).
        """
        options = CacheOptions(
            max_age=max_age, stale_while_revalidate=stale_while_revalidate
        )

        def decorator(func: Callable[..., T]) -> Callable[..., T]:
            if inspect.iscoroutinefunction(func):
                if stash is not None and not isinstance(stash, AsyncStash):
                    raise TypeError("coroutine functions need an AsyncStash")
                function_stash = stash if stash is not None else AsyncStash()

                async def async_wrapper(*args, **kwargs) -> Any:
                    cache_key = make_key(key, args, kwargs)
                    return await function_stash.cache(
                        cache_key, options, lambda ctx: func(*args, **kwargs)
                    )

                async def async_invalidate(*args, **kwargs) -> bool:
                    return await function_stash.delete(make_key(key, args, kwargs))

                wrapper = async_wrapper
                wrapper.invalidate = async_invalidate  # type: ignore
            else:
                if stash is not None and not isinstance(stash, Stash):
                    raise TypeError("plain functions need a Stash")
                function_stash = stash if stash is not None else Stash()

                def sync_wrapper(*args, **kwargs) -> Any:
                    cache_key = make_key(key, args, kwargs)
                    return function_stash.cache(
                        cache_key, options, lambda ctx: func(*args, **kwargs)
                    )

                def sync_invalidate(*args, **kwargs) -> bool:
                    return function_stash.delete(make_key(key, args, kwargs))

                wrapper = sync_wrapper
                wrapper.invalidate = sync_invalidate  # type: ignore

            wrapper.__wrapped__ = func  # type: ignore
            wrapper.__name__ = func.__name__  # type: ignore
            wrapper.__doc__ = func.__doc__  # type: ignore
            wrapper._stash = function_stash  # type: ignore
            return wrapper  # type: ignore

        return decorator


# Alias for shorter usage
SWRCache = StaleWhileRevalidateCache
