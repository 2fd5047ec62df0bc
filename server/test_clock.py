"""
Test suite for the local round clock.

Run with: pytest test_clock.py -v
"""

import asyncio

import pytest

from clock import RoundClock


class FakeTime:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestRoundClock:

    def test_idle_clock(self):
        clock = RoundClock(duration=60, time_fn=FakeTime())
        assert not clock.running
        assert clock.remaining() is None
        assert not clock.expired

    @pytest.mark.asyncio
    async def test_countdown(self):
        fake = FakeTime()
        clock = RoundClock(duration=60, time_fn=fake)
        clock.start()
        assert clock.remaining() == 60
        fake.now += 45
        assert clock.remaining() == 15
        fake.now += 30
        assert clock.remaining() == 0
        assert clock.expired

    @pytest.mark.asyncio
    async def test_start_twice_keeps_first_start(self):
        fake = FakeTime()
        clock = RoundClock(duration=60, time_fn=fake)
        clock.start()
        fake.now += 10
        clock.start()
        assert clock.remaining() == 50

    @pytest.mark.asyncio
    async def test_expiry_callback(self):
        fired = asyncio.Event()
        clock = RoundClock(duration=0.01)
        clock.start(fired.set)
        await asyncio.wait_for(fired.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_stop_cancels_callback(self):
        fired = []
        clock = RoundClock(duration=0.01)
        clock.start(lambda: fired.append(True))
        clock.stop()
        await asyncio.sleep(0.05)
        assert fired == []
        assert not clock.running
