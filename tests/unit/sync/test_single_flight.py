"""Tests for per-key request collapsing."""

import asyncio

import pytest

from cloudpack.sync.single_flight import SingleFlight


class TestSingleFlight:
    """Test SingleFlight.do semantics."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_run(self):
        flight = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        callers = [asyncio.create_task(flight.do("key", work)) for _ in range(5)]
        await asyncio.sleep(0)
        assert flight.in_flight("key")
        release.set()

        assert await asyncio.gather(*callers) == ["done"] * 5
        assert calls == 1
        assert len(flight) == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_run_independently(self):
        flight = SingleFlight()
        seen = []

        async def work(key):
            seen.append(key)
            await asyncio.sleep(0)
            return key

        results = await asyncio.gather(
            flight.do("a", lambda: work("a")), flight.do("b", lambda: work("b"))
        )

        assert results == ["a", "b"]
        assert sorted(seen) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self):
        flight = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            return calls

        assert await flight.do("key", work) == 1
        assert await flight.do("key", work) == 2

    @pytest.mark.asyncio
    async def test_error_reaches_every_caller(self):
        flight = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            raise RuntimeError("boom")

        callers = [asyncio.create_task(flight.do("key", work)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*callers, return_exceptions=True)
        assert all(isinstance(result, RuntimeError) for result in results)
        assert not flight.in_flight("key")

    @pytest.mark.asyncio
    async def test_cancelled_joiner_does_not_cancel_work(self):
        flight = SingleFlight()
        release = asyncio.Event()

        async def work():
            await release.wait()
            return "done"

        leader = asyncio.create_task(flight.do("key", work))
        await asyncio.sleep(0)
        joiner = asyncio.create_task(flight.do("key", work))
        await asyncio.sleep(0)

        joiner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await joiner

        release.set()
        assert await leader == "done"

    @pytest.mark.asyncio
    async def test_joiner_takes_over_from_cancelled_leader(self):
        flight = SingleFlight()
        runs = 0
        release = asyncio.Event()

        async def work():
            nonlocal runs
            runs += 1
            await release.wait()
            return runs

        leader = asyncio.create_task(flight.do("key", work))
        await asyncio.sleep(0)
        joiner = asyncio.create_task(flight.do("key", work))
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        await asyncio.sleep(0)
        release.set()

        assert await joiner == 2
        assert runs == 2
