"""Tests for WeightBudgetTracker pacing.

A FakeClock stands in for time.monotonic and asyncio.sleep, so waiting is
observed as recorded sleep durations instead of real delays.
"""

import pytest

from backfill.exchange.weight import WeightBudgetTracker
from helpers import FakeClock


@pytest.fixture
def tracker(fake_clock: FakeClock) -> WeightBudgetTracker:
    return WeightBudgetTracker(
        limit=10, window_seconds=60.0, clock=fake_clock, sleep=fake_clock.sleep
    )


class TestReserve:
    """Tests for blocking reservation of request weight."""

    @pytest.mark.asyncio
    async def test_reserve_within_budget_does_not_wait(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        for _ in range(10):
            await tracker.reserve(1)
        assert fake_clock.sleeps == []
        assert tracker.snapshot().used == 10

    @pytest.mark.asyncio
    async def test_reserve_over_budget_waits_for_window_reset(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        for _ in range(10):
            await tracker.reserve(1)
        fake_clock.now += 15.0

        await tracker.reserve(1)

        assert fake_clock.sleeps == [pytest.approx(45.0)]
        assert tracker.snapshot().used == 1

    @pytest.mark.asyncio
    async def test_window_elapsed_resets_counter(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        await tracker.reserve(10)
        fake_clock.now += 60.0

        await tracker.reserve(5)

        assert fake_clock.sleeps == []
        assert tracker.snapshot().used == 5

    @pytest.mark.asyncio
    async def test_cost_above_limit_blocks_one_full_window(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        await tracker.reserve(25)

        assert fake_clock.sleeps == [60.0]
        assert tracker.snapshot().used == 25


class TestObserve:
    """Tests for authoritative usage reported by the upstream."""

    @pytest.mark.asyncio
    async def test_observe_overwrites_local_estimate(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        await tracker.reserve(1)
        tracker.observe(9)
        assert tracker.snapshot().used == 9

        # 9 + 2 > 10: must wait for the rest of the window
        await tracker.reserve(2)
        assert fake_clock.sleeps == [pytest.approx(60.0)]

    def test_observe_none_keeps_counter(self, tracker: WeightBudgetTracker) -> None:
        tracker.observe(4)
        tracker.observe(None)
        assert tracker.snapshot().used == 4

    def test_snapshot_reports_time_to_reset(
        self, tracker: WeightBudgetTracker, fake_clock: FakeClock
    ) -> None:
        fake_clock.now += 20.0
        usage = tracker.snapshot()
        assert usage.limit == 10
        assert usage.resets_in_seconds == pytest.approx(40.0)
