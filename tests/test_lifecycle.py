"""
Tests for expiry math and the background sweeper.
"""

import asyncio
import functools
from datetime import datetime, timezone

from lifecycle import ExpirySweeper, compute_expiry, is_expired


def async_test(coro):
    """Decorator to run async tests with asyncio.run."""

    @functools.wraps(coro)
    def wrapper(*args, **kwargs):
        return asyncio.run(coro(*args, **kwargs))

    return wrapper


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestComputeExpiry:
    def test_utc(self):
        assert compute_expiry("2025-01-10", "UTC") == utc(2025, 1, 11)

    def test_room_zone_not_viewer_zone(self):
        assert compute_expiry("2025-01-10", "America/New_York") == utc(2025, 1, 11, 5)
        assert compute_expiry("2025-01-10", "Asia/Kolkata") == utc(2025, 1, 10, 18, 30)

    def test_month_and_year_rollover(self):
        assert compute_expiry("2024-12-31", "UTC") == utc(2025, 1, 1)
        assert compute_expiry("2024-02-28", "UTC") == utc(2024, 2, 29)

    def test_is_expired_boundary(self, store, created):
        room = store.get(created["code"])
        assert not is_expired(room, utc(2025, 1, 10, 23, 59, 59))
        assert is_expired(room, utc(2025, 1, 11))


class TestExpirySweeper:
    @async_test
    async def test_run_once_sweeps_and_delivers(self):
        calls = []
        delivered = []

        def sweep(now):
            calls.append(now)
            return ["123456"]

        async def deliver():
            delivered.append(True)

        sweeper = ExpirySweeper(sweep, deliver, interval=60, clock=lambda: utc(2025, 1, 1))
        assert await sweeper.run_once() == ["123456"]
        assert calls == [utc(2025, 1, 1)]
        assert delivered == [True]

    @async_test
    async def test_background_loop_survives_errors(self):
        calls = []

        def sweep(now):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        async def deliver():
            return None

        sweeper = ExpirySweeper(sweep, deliver, interval=0.01)
        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.1)
        await sweeper.stop()
        assert not sweeper.running
        assert len(calls) >= 2

    @async_test
    async def test_start_is_idempotent(self):
        async def deliver():
            return None

        sweeper = ExpirySweeper(lambda now: [], deliver, interval=10)
        sweeper.start()
        task = sweeper._task
        sweeper.start()
        assert sweeper._task is task
        await sweeper.stop()

    @async_test
    async def test_sweep_expires_rooms_in_service(self, service, store, clock, created):
        async def deliver():
            service.drain()

        clock.now = utc(2025, 1, 11)
        sweeper = ExpirySweeper(service.sweep, deliver, clock=clock)
        assert await sweeper.run_once() == [created["code"]]
        assert created["code"] not in store
