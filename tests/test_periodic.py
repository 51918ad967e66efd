"""Tests for the periodic task helper."""

import asyncio

import pytest

from remoteplay.periodic import PeriodicTask


class TestPeriodicTask:
    """Start/stop lifecycle."""

    def test_stop_from_inside_tick(self):
        """A callback can stop its own task without cancelling itself."""
        ticks = []

        async def scenario():
            task = None

            def callback():
                ticks.append(1)
                task.stop()

            task = PeriodicTask("self-stop", 0.001, callback)
            task.start()
            await asyncio.sleep(0.02)
            assert not task.running

        asyncio.run(scenario())
        assert ticks == [1]

    def test_failing_tick_logged(self, caplog):
        """Exceptions in a tick are logged and the loop keeps going."""
        ticks = []

        async def scenario():
            def callback():
                ticks.append(1)
                raise RuntimeError("boom")

            task = PeriodicTask("flaky", 0.001, callback)
            task.start()
            while len(ticks) < 3:
                await asyncio.sleep(0.001)
            task.stop()

        asyncio.run(scenario())
        assert "flaky tick failed: boom" in caplog.text

    def test_coroutine_callback(self):
        """Coroutine callbacks are awaited."""
        ticks = []

        async def scenario():
            async def callback():
                ticks.append(1)

            task = PeriodicTask("async", 0.001, callback)
            task.start()
            while not ticks:
                await asyncio.sleep(0.001)
            task.stop()

        asyncio.run(scenario())
        assert ticks

    def test_rejects_non_positive_interval(self):
        """Intervals must be positive."""
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)
