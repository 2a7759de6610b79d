"""
Tests for the global backend concurrency limiter.
"""

import asyncio

import pytest

from server.limiter import ConcurrencyLimiter


class _Probe:
    """Tracks how many tasks run at once."""

    def __init__(self):
        self.current = 0
        self.peak = 0
        self.started = []

    def task(self, name, delay=0.02, fail=False):
        async def _run():
            self.current += 1
            self.peak = max(self.peak, self.current)
            self.started.append(name)
            try:
                await asyncio.sleep(delay)
                if fail:
                    raise RuntimeError(f"{name} failed")
                return name
            finally:
                self.current -= 1

        return _run


class TestConcurrencyLimiter:
    """Tests for cap, ordering and release guarantees."""

    @pytest.mark.asyncio
    async def test_never_exceeds_cap_under_burst(self):
        limiter = ConcurrencyLimiter(3)
        probe = _Probe()

        results = await asyncio.gather(*(limiter.run(probe.task(i)) for i in range(12)))

        assert results == list(range(12))
        assert probe.peak == 3
        assert limiter.active == 0
        assert limiter.queued == 0

    @pytest.mark.asyncio
    async def test_fifo_promotion(self):
        limiter = ConcurrencyLimiter(1)
        probe = _Probe()

        await asyncio.gather(*(limiter.run(probe.task(i, delay=0.001)) for i in range(6)))

        assert probe.started == list(range(6))

    @pytest.mark.asyncio
    async def test_failure_releases_slot(self):
        limiter = ConcurrencyLimiter(1)
        probe = _Probe()

        with pytest.raises(RuntimeError):
            await limiter.run(probe.task("bad", fail=True))

        assert limiter.active == 0
        assert await limiter.run(probe.task("good")) == "good"

    @pytest.mark.asyncio
    async def test_timeout_releases_slot_when_call_finishes(self):
        """A cancelled waiter keeps the slot until the call itself ends."""
        limiter = ConcurrencyLimiter(1)
        probe = _Probe()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(limiter.run(probe.task("slow", delay=0.05)), timeout=0.01)

        assert limiter.active == 1
        await asyncio.sleep(0.08)
        assert limiter.active == 0
        assert await limiter.run(probe.task("next")) == "next"

    @pytest.mark.asyncio
    async def test_cancel_while_queued_leaves_queue(self):
        limiter = ConcurrencyLimiter(1)
        probe = _Probe()

        first = asyncio.ensure_future(limiter.run(probe.task("first", delay=0.03)))
        await asyncio.sleep(0)
        queued = asyncio.ensure_future(limiter.run(probe.task("queued")))
        await asyncio.sleep(0)
        assert limiter.queued == 1

        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued

        assert limiter.queued == 0
        assert await first == "first"
        assert "queued" not in probe.started
        assert limiter.active == 0

    @pytest.mark.asyncio
    async def test_sibling_failure_does_not_cancel_others(self):
        limiter = ConcurrencyLimiter(2)
        probe = _Probe()

        results = await asyncio.gather(
            limiter.run(probe.task("a", fail=True)),
            limiter.run(probe.task("b")),
            limiter.run(probe.task("c")),
            return_exceptions=True,
        )

        assert isinstance(results[0], RuntimeError)
        assert results[1:] == ["b", "c"]

    def test_minimum_one_slot(self):
        assert ConcurrencyLimiter(0).max_concurrent == 1
