from __future__ import annotations

import asyncio
import logging

import pytest

from insight_pipeline.pipeline.scheduler import PeriodicLoop, SystemClock
from insight_pipeline.testing import ManualClock


async def _spin(loop: PeriodicLoop, iterations: int) -> None:
    while loop.iterations < iterations:
        await asyncio.sleep(0)


async def test_run_once_counts_iteration(clock: ManualClock) -> None:
    calls: list[int] = []

    async def tick() -> None:
        calls.append(1)

    loop = PeriodicLoop("test", tick, 5, clock=clock)
    await loop.run_once()
    assert calls == [1]
    assert loop.iterations == 1


async def test_failing_iteration_is_logged_and_survived(
    clock: ManualClock, caplog: pytest.LogCaptureFixture
) -> None:
    async def tick() -> None:
        raise RuntimeError("boom")

    loop = PeriodicLoop("flaky", tick, 5, clock=clock)
    with caplog.at_level(logging.ERROR):
        await loop.run_once()
        await loop.run_once()

    assert loop.iterations == 2
    assert "[flaky] iteration failed" in caplog.text


async def test_loop_sleeps_interval_between_iterations(clock: ManualClock) -> None:
    seen = []

    async def tick() -> None:
        seen.append(clock.now())

    loop = PeriodicLoop("ticker", tick, 30, clock=clock)
    loop.start()
    await asyncio.wait_for(_spin(loop, 3), timeout=1)
    await loop.stop()

    assert (seen[1] - seen[0]).total_seconds() == 30
    assert (seen[2] - seen[1]).total_seconds() == 30
    assert not loop.running


async def test_start_is_idempotent(clock: ManualClock) -> None:
    async def tick() -> None:
        return None

    loop = PeriodicLoop("once", tick, 1, clock=clock)
    first = loop.start()
    assert loop.start() is first
    assert loop.running
    await loop.stop()


async def test_stop_without_start(clock: ManualClock) -> None:
    async def tick() -> None:
        return None

    await PeriodicLoop("idle", tick, 1, clock=clock).stop()


async def test_system_clock_is_utc() -> None:
    now = SystemClock().now()
    assert now.utcoffset() is not None
    assert now.utcoffset().total_seconds() == 0  # type: ignore[union-attr]
