"""
Unit tests for AsyncStash.
Each test drives its own event loop through asyncio.run.
"""

import asyncio

import pytest

from swr_stash import (
    AsyncStash,
    CacheOptions,
    InMemCache,
    ProducerMissingError,
    ProducerTypeError,
)


def must_not_run(ctx):
    raise AssertionError("producer called unnecessarily")


class AsyncInMemStorage:
    """Storage whose every method is a coroutine."""

    def __init__(self):
        self.inner = InMemCache()

    async def size(self):
        return self.inner.size()

    async def has(self, key):
        return self.inner.has(key)

    async def get(self, key):
        return self.inner.get(key)

    async def set(self, key, entry):
        self.inner.set(key, entry)
        return self

    async def delete(self, key):
        return self.inner.delete(key)

    async def clear_matching(self, matcher):
        self.inner.clear_matching(matcher)

    async def clear(self):
        self.inner.clear()


@pytest.fixture(params=["sync", "async"])
def storage(request):
    return InMemCache() if request.param == "sync" else AsyncInMemStorage()


class TestAsyncStash:
    def test_size_and_clear(self, clock, storage):
        """size() and clear() work over sync and async storage."""
        async def scenario():
            stash = AsyncStash(storage, clock=clock)
            assert await stash.size() == 0

            await stash.cache("k1", producer=lambda ctx: 41)
            await stash.cache("k2", producer=lambda ctx: 42)
            assert await stash.size() == 2

            await stash.clear()
            assert await stash.size() == 0

        asyncio.run(scenario())

    def test_async_producer(self, clock, storage):
        """Async producers are awaited and their result cached."""
        async def produce(ctx):
            await asyncio.sleep(0)
            return {"ctx": ctx.is_revalidating}

        async def scenario():
            stash = AsyncStash(storage, clock=clock)
            assert await stash.cache("k", producer=produce) == {"ctx": False}
            assert await stash.cache("k", producer=must_not_run) == {"ctx": False}

        asyncio.run(scenario())

    def test_producer_validation(self):
        """Producer checks match the synchronous engine."""
        async def scenario():
            stash = AsyncStash()
            with pytest.raises(ProducerMissingError):
                await stash.cache("k1")
            with pytest.raises(ProducerMissingError):
                await stash.cache("k1", {})
            with pytest.raises(ProducerMissingError, match="producer="):
                await stash.cache("k1", lambda ctx: 1)
            with pytest.raises(ProducerTypeError):
                await stash.cache("k1", {}, object())

        asyncio.run(scenario())

    def test_scenario(self, clock, storage):
        """41 fresh, 41 stale + background 42, 42, then a fresh 43 once expired."""
        contexts = []

        def recording(value):
            async def produce(ctx):
                contexts.append(ctx)
                return value

            return produce

        async def scenario():
            stash = AsyncStash(storage, clock=clock)
            options = CacheOptions(max_age=1, stale_while_revalidate=1)

            assert await stash.cache("k1", options, recording(41)) == 41

            clock.at(0.5)
            assert await stash.cache("k1", options, must_not_run) == 41

            clock.at(1.2)
            assert await stash.cache("k1", options, recording(42)) == 41
            assert await stash.wait_for_revalidations(timeout=5)

            clock.at(1.3)
            assert await stash.cache("k1", options, must_not_run) == 42

            clock.at(3.5)
            assert await stash.cache("k1", options, recording(43)) == 43

        asyncio.run(scenario())
        assert [c.is_revalidating for c in contexts] == [False, True, False]

    def test_stale_return_does_not_wait(self, clock):
        """A stale hit returns while the revalidation task is still pending."""
        async def scenario():
            stash = AsyncStash(clock=clock)
            options = CacheOptions(max_age=1, stale_while_revalidate=10)
            await stash.cache("k", options, lambda ctx: "old")

            release = asyncio.Event()

            async def slow(ctx):
                await release.wait()
                return "new"

            clock.at(2)
            assert await stash.cache("k", options, slow) == "old"
            assert await stash.wait_for_revalidations(timeout=0.01) is False

            release.set()
            assert await stash.wait_for_revalidations(timeout=5)
            assert await stash.cache("k", options, must_not_run) == "new"

        asyncio.run(scenario())

    def test_background_failure_is_swallowed(self, clock):
        """A failed revalidation task keeps the stale entry and calls the hook."""
        errors = []

        async def boom(ctx):
            raise ValueError("upstream failed")

        async def scenario():
            stash = AsyncStash(
                clock=clock, on_revalidate_error=lambda k, e: errors.append((k, e))
            )
            options = CacheOptions(max_age=1, stale_while_revalidate=5)
            await stash.cache("k", options, lambda ctx: 41)
            before = stash.storage.get("k")

            clock.at(2)
            assert await stash.cache("k", options, boom) == 41
            await stash.wait_for_revalidations(timeout=5)
            await asyncio.sleep(0)

            assert stash.storage.get("k") is before

        asyncio.run(scenario())
        assert len(errors) == 1
        assert isinstance(errors[0][1], ValueError)

    def test_sync_failure_propagates(self, clock):
        """A failing producer on a miss raises to the awaiting caller."""
        async def boom(ctx):
            raise RuntimeError("no value")

        async def scenario():
            stash = AsyncStash(clock=clock)
            with pytest.raises(RuntimeError):
                await stash.cache("k", producer=boom)
            assert await stash.size() == 0

        asyncio.run(scenario())

    def test_clear_stale_and_delete(self, clock, storage):
        """clear_stale() and delete() await async storage methods."""
        async def scenario():
            stash = AsyncStash(storage, clock=clock)
            await stash.cache("k1", {"max_age": 1}, lambda ctx: 41)
            await stash.cache("k2", {"max_age": 3}, lambda ctx: 42)

            clock.at(2)
            await stash.clear_stale()
            assert await stash.size() == 1

            assert await stash.delete("k2") is True
            assert await stash.delete("k2") is False
            assert await stash.size() == 0

        asyncio.run(scenario())


class TestAsyncCoalescing:
    def test_concurrent_misses_share_production(self):
        """With coalescing, gathered misses run the producer once."""
        calls = []

        async def produce(ctx):
            calls.append(ctx)
            await asyncio.sleep(0.01)
            return "shared"

        async def scenario():
            stash = AsyncStash(coalesce=True)
            results = await asyncio.gather(
                *(stash.cache("k", producer=produce) for _ in range(5))
            )
            assert results == ["shared"] * 5
            assert stash._in_flight == {}

        asyncio.run(scenario())
        assert len(calls) == 1

    def test_concurrent_misses_without_coalescing(self):
        """Without coalescing, each gathered miss runs the producer."""
        calls = []

        async def produce(ctx):
            calls.append(ctx)
            await asyncio.sleep(0.01)
            return len(calls)

        async def scenario():
            stash = AsyncStash()
            await asyncio.gather(*(stash.cache("k", producer=produce) for _ in range(3)))
            assert await stash.size() == 1

        asyncio.run(scenario())
        assert len(calls) == 3

    def test_shared_error_reaches_every_caller(self):
        """A shared production failure is raised to every waiting caller."""
        async def produce(ctx):
            await asyncio.sleep(0.01)
            raise LookupError("shared failure")

        async def scenario():
            stash = AsyncStash(coalesce=True)
            results = await asyncio.gather(
                *(stash.cache("k", producer=produce) for _ in range(3)),
                return_exceptions=True,
            )
            assert all(isinstance(r, LookupError) for r in results)
            assert await stash.size() == 0

        asyncio.run(scenario())

    def test_single_revalidation_in_flight(self, clock):
        """With coalescing, stale hits start only one revalidation task."""
        calls = []

        async def scenario():
            stash = AsyncStash(clock=clock, coalesce=True)
            options = CacheOptions(max_age=1, stale_while_revalidate=10)
            await stash.cache("k", options, lambda ctx: "old")

            release = asyncio.Event()

            async def slow(ctx):
                calls.append(ctx)
                await release.wait()
                return "new"

            clock.at(2)
            for _ in range(4):
                assert await stash.cache("k", options, slow) == "old"

            release.set()
            assert await stash.wait_for_revalidations(timeout=5)
            assert await stash.cache("k", options, must_not_run) == "new"

        asyncio.run(scenario())
        assert len(calls) == 1
