"""
Memoizing stash with stale-while-revalidate.

Provides:
- Stash: engine for synchronous callers, revalidates on background threads
- AsyncStash: asyncio engine, revalidates on background tasks
- CacheOptions / ProducerContext: per-call configuration and producer argument
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Union

from .storage import CacheEntry, CacheStorage, EntryState, InMemCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 60 * 60  # cache for 1 hour by default
DEFAULT_STALE_WHILE_REVALIDATE = 0


# ============================================================================
# Errors
# ============================================================================


class CacheConfigurationError(TypeError):
    """A stash operation was called with unusable arguments."""


class ProducerMissingError(CacheConfigurationError):
    def __init__(self, options: Any = None):
        message = "expected producer to be a callable, got None"
        if callable(options):
            message += "; a callable was passed as options, pass it as producer="
        super().__init__(message)


class ProducerTypeError(CacheConfigurationError):
    def __init__(self, producer: Any):
        super().__init__(
            f"producer is not callable (got {type(producer).__name__})"
        )


# ============================================================================
# Options and producer argument
# ============================================================================


@dataclass(frozen=True)
class CacheOptions:
    """
    Freshness settings for an entry, in seconds.

    Unset fields fall back to the stash defaults when the entry is written.
    """

    max_age: float | None = None
    stale_while_revalidate: float | None = None

    def __post_init__(self):
        for name in ("max_age", "stale_while_revalidate"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")

    @classmethod
    def coerce(cls, options: OptionsLike) -> CacheOptions:
        """Accept None, a CacheOptions, or a mapping with the same keys."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, Mapping):
            return cls(**options)
        raise CacheConfigurationError(
            f"options must be CacheOptions or a mapping, got {type(options).__name__}"
        )

    def merged_over(self, defaults: CacheOptions) -> CacheOptions:
        """Per-field override of defaults."""
        return CacheOptions(
            max_age=self.max_age if self.max_age is not None else defaults.max_age,
            stale_while_revalidate=(
                self.stale_while_revalidate
                if self.stale_while_revalidate is not None
                else defaults.stale_while_revalidate
            ),
        )


OptionsLike = Union[CacheOptions, Mapping[str, float], None]


@dataclass(frozen=True)
class ProducerContext:
    """Passed to every producer call."""

    is_revalidating: bool


Producer = Callable[[ProducerContext], Any]


# ============================================================================
# Shared policy
# ============================================================================


class _StashBase:
    """Configuration, option merging and error reporting shared by both engines."""

    def __init__(
        self,
        storage: CacheStorage | None = None,
        defaults: OptionsLike = None,
        *,
        clock: Callable[[], float] = time.time,
        coalesce: bool = False,
        on_revalidate_error: Callable[[Hashable, BaseException], None] | None = None,
    ):
        """
        Args:
            storage: Entry storage (defaults to a new InMemCache)
            defaults: Default CacheOptions; unset fields use 3600s / 0s
            clock: Time source returning Unix seconds
            coalesce: Share one in-flight production per key among callers.
                A producer must not call cache() for its own key while
                coalescing: it would wait on its own in-flight entry forever
            on_revalidate_error: Called with (key, error) when a background
                revalidation fails
        """
        self.storage = storage if storage is not None else InMemCache()
        self.defaults = CacheOptions.coerce(defaults).merged_over(
            CacheOptions(
                max_age=DEFAULT_MAX_AGE,
                stale_while_revalidate=DEFAULT_STALE_WHILE_REVALIDATE,
            )
        )
        self.clock = clock
        self.coalesce = coalesce
        self.on_revalidate_error = on_revalidate_error

    def _prepare(self, options: OptionsLike, producer: Any) -> CacheOptions:
        # Checked before any storage access
        if producer is None:
            raise ProducerMissingError(options)
        if not callable(producer):
            raise ProducerTypeError(producer)
        return CacheOptions.coerce(options).merged_over(self.defaults)

    def _make_entry(self, value: Any, options: CacheOptions) -> CacheEntry:
        return CacheEntry(
            value=value,
            stored_at=self.clock(),
            max_age=options.max_age,
            stale_while_revalidate=options.stale_while_revalidate,
        )

    def _log_lookup(self, key: Hashable, entry: CacheEntry | None, now: float):
        if entry is None:
            logger.debug(f"Cache MISS: {key!r}")
            return None
        state = entry.state(now)
        if state is EntryState.FRESH:
            logger.debug(f"Cache HIT (fresh): {key!r}")
        elif state is EntryState.STALE:
            logger.debug(f"Cache HIT (stale): {key!r}, revalidating in background")
        else:
            logger.debug(f"Cache HIT (expired): {key!r}, age={entry.age(now):.1f}s")
        return state

    def _not_fresh(self, now: float) -> Callable[[Hashable, CacheEntry], bool]:
        return lambda key, entry: not entry.is_fresh(now)

    def _handle_revalidate_error(self, key: Hashable, error: BaseException) -> None:
        logger.error(
            f"Background revalidation failed for {key!r}: {error}", exc_info=error
        )
        if self.on_revalidate_error:
            try:
                self.on_revalidate_error(key, error)
            except Exception as err:
                logger.error(f"Revalidation error handler failed: {err}")


# ============================================================================
# Stash - thread-based engine
# ============================================================================


@dataclass
class _InFlight:
    """A production in progress that other callers may wait on."""

    event: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: BaseException | None = None

    def wait(self) -> Any:
        self.event.wait()
        if self.error is not None:
            raise self.error
        return self.result


def _run_awaitable(awaitable: Any) -> Any:
    """Drive an awaitable to completion on a private event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(awaitable)
    finally:
        loop.close()


class Stash(_StashBase):
    """
    Memoizing cache with stale-while-revalidate for synchronous callers.

    Fresh entries are returned as is. Stale entries are returned immediately
    while a daemon thread re-runs the producer. Missing or expired entries are
    produced inline. Producers may return coroutines; they are run on a private
    event loop, so use AsyncStash from inside a running loop.

    With coalesce=True a producer must not call cache() for its own key:
    it would wait on its own in-flight production forever.

    Example:
        stash = Stash(InMemCache(), CacheOptions(max_age=60, stale_while_revalidate=30))

        def load_user(ctx: ProducerContext):
            return db.fetch_user(42)

        user = stash.cache("user:42", producer=load_user)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()
        self._in_flight: dict[Hashable, _InFlight] = {}

    def size(self) -> int:
        return self.storage.size()

    def cache(
        self,
        key: Hashable,
        options: OptionsLike = None,
        producer: Producer | None = None,
    ) -> Any:
        """
        Return the value for key, producing it when needed.

        Args:
            key: Cache key
            options: CacheOptions (or mapping) merged over the stash defaults
            producer: Callable taking a ProducerContext, returning the value
                or an awaitable of it

        Raises:
            ProducerMissingError: producer not given
            ProducerTypeError: producer not callable
        """
        resolved = self._prepare(options, producer)
        now = self.clock()
        entry = self.storage.get(key)
        state = self._log_lookup(key, entry, now)

        if state is EntryState.FRESH:
            return entry.value
        if state is EntryState.STALE:
            self._revalidate_in_background(key, resolved, producer)
            return entry.value

        return self._produce(key, resolved, producer)

    def delete(self, key: Hashable) -> bool:
        return self.storage.delete(key)

    def clear_stale(self) -> None:
        """Remove every entry that is not fresh right now."""
        self.storage.clear_matching(self._not_fresh(self.clock()))

    def clear(self) -> None:
        self.storage.clear()

    def wait_for_revalidations(self, timeout: float | None = None) -> bool:
        """
        Block until background revalidations finish.

        Returns:
            False if the timeout elapsed first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                threads = list(self._threads)
            if not threads:
                return True
            for thread in threads:
                remaining = (
                    None if deadline is None else max(0.0, deadline - time.monotonic())
                )
                thread.join(remaining)
                if thread.is_alive():
                    return False

    def _produce_and_store(
        self,
        key: Hashable,
        options: CacheOptions,
        producer: Producer,
        is_revalidating: bool,
    ) -> Any:
        value = producer(ProducerContext(is_revalidating=is_revalidating))
        if inspect.isawaitable(value):
            value = _run_awaitable(value)
        self.storage.set(key, self._make_entry(value, options))
        return value

    def _join_or_start(self, key: Hashable) -> tuple[_InFlight, bool]:
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                return in_flight, False
            in_flight = self._in_flight[key] = _InFlight()
            return in_flight, True

    def _run_in_flight(
        self,
        key: Hashable,
        in_flight: _InFlight,
        options: CacheOptions,
        producer: Producer,
        is_revalidating: bool,
    ) -> Any:
        try:
            in_flight.result = self._produce_and_store(
                key, options, producer, is_revalidating
            )
        except BaseException as e:
            in_flight.error = e
            raise
        finally:
            in_flight.event.set()
            with self._lock:
                if self._in_flight.get(key) is in_flight:
                    del self._in_flight[key]
        return in_flight.result

    def _produce(self, key: Hashable, options: CacheOptions, producer: Producer) -> Any:
        if not self.coalesce:
            return self._produce_and_store(key, options, producer, False)

        in_flight, is_initiator = self._join_or_start(key)
        if not is_initiator:
            logger.debug(f"Coalescing production for {key!r}")
            return in_flight.wait()
        return self._run_in_flight(key, in_flight, options, producer, False)

    def _revalidate_in_background(
        self, key: Hashable, options: CacheOptions, producer: Producer
    ) -> None:
        if self.coalesce:
            in_flight, is_initiator = self._join_or_start(key)
            if not is_initiator:
                logger.debug(f"Revalidation already in flight: {key!r}")
                return
            target = functools.partial(
                self._run_in_flight, key, in_flight, options, producer, True
            )
        else:
            target = functools.partial(
                self._produce_and_store, key, options, producer, True
            )

        def revalidate_job():
            try:
                target()
                logger.debug(f"Background revalidation complete: {key!r}")
            except Exception as e:
                self._handle_revalidate_error(key, e)
            finally:
                with self._lock:
                    self._threads.discard(threading.current_thread())

        thread = threading.Thread(
            target=revalidate_job, name=f"stash-revalidate:{key!r}", daemon=True
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()


# ============================================================================
# AsyncStash - asyncio engine
# ============================================================================


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AsyncStash(_StashBase):
    """
    Asyncio counterpart of Stash.

    Storage methods and producers may be plain or async. Stale entries are
    revalidated on tasks of the running loop; the stash keeps a reference to
    each task until it finishes.

    With coalesce=True a producer must not await cache() for its own key:
    it would wait on its own in-flight production forever.

    Example:
        stash = AsyncStash(defaults=CacheOptions(max_age=60, stale_while_revalidate=30))

        async def load_product(ctx: ProducerContext):
            return await api.fetch_product(7)

        product = await stash.cache("product:7", producer=load_product)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: dict[Hashable, asyncio.Task] = {}

    async def size(self) -> int:
        return await _maybe_await(self.storage.size())

    async def cache(
        self,
        key: Hashable,
        options: OptionsLike = None,
        producer: Producer | None = None,
    ) -> Any:
        """Async version of Stash.cache."""
        resolved = self._prepare(options, producer)
        now = self.clock()
        entry = await _maybe_await(self.storage.get(key))
        state = self._log_lookup(key, entry, now)

        if state is EntryState.FRESH:
            return entry.value
        if state is EntryState.STALE:
            self._revalidate_in_background(key, resolved, producer)
            return entry.value

        return await self._produce(key, resolved, producer)

    async def delete(self, key: Hashable) -> bool:
        return await _maybe_await(self.storage.delete(key))

    async def clear_stale(self) -> None:
        """Remove every entry that is not fresh right now."""
        await _maybe_await(self.storage.clear_matching(self._not_fresh(self.clock())))

    async def clear(self) -> None:
        await _maybe_await(self.storage.clear())

    async def wait_for_revalidations(self, timeout: float | None = None) -> bool:
        """Wait for background revalidations. False if the timeout elapsed."""
        tasks = set(self._tasks)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def _produce_and_store(
        self,
        key: Hashable,
        options: CacheOptions,
        producer: Producer,
        is_revalidating: bool,
    ) -> Any:
        value = await _maybe_await(
            producer(ProducerContext(is_revalidating=is_revalidating))
        )
        await _maybe_await(self.storage.set(key, self._make_entry(value, options)))
        return value

    def _start_in_flight(self, key: Hashable, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._in_flight[key] = task

        def forget(done: asyncio.Task) -> None:
            if self._in_flight.get(key) is done:
                del self._in_flight[key]

        task.add_done_callback(forget)
        return task

    async def _produce(
        self, key: Hashable, options: CacheOptions, producer: Producer
    ) -> Any:
        if not self.coalesce:
            return await self._produce_and_store(key, options, producer, False)

        task = self._in_flight.get(key)
        if task is None:
            task = self._start_in_flight(
                key, self._produce_and_store(key, options, producer, False)
            )
        else:
            logger.debug(f"Coalescing production for {key!r}")
        # A cancelled caller must not cancel the shared production
        return await asyncio.shield(task)

    def _revalidate_in_background(
        self, key: Hashable, options: CacheOptions, producer: Producer
    ) -> None:
        if self.coalesce and key in self._in_flight:
            logger.debug(f"Revalidation already in flight: {key!r}")
            return

        coro = self._produce_and_store(key, options, producer, True)
        if self.coalesce:
            task = self._start_in_flight(key, coro)
        else:
            task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._on_revalidated, key))

    def _on_revalidated(self, key: Hashable, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background revalidation cancelled: {key!r}")
            return
        error = task.exception()
        if error is None:
            logger.debug(f"Background revalidation complete: {key!r}")
            return
        self._handle_revalidate_error(key, error)
