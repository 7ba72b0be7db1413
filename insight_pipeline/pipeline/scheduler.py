"""Time source and the periodic loop every pipeline component runs on."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from insight_pipeline.models.utils import utcnow

logger = logging.getLogger(__name__)


class Clock(ABC):
    """Injected source of "now" and of waiting.

    Components never read the wall clock directly, so tests can drive
    cooldowns, lock expiry and stuck-job detection with a fake clock.
    """

    @abstractmethod
    def now(self) -> datetime: ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicLoop:
    """Run ``tick`` forever: iteration, sleep, iteration.

    Iterations of one loop never overlap.  An exception raised by an
    iteration is logged and the loop carries on; cancellation stops it.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self.iterations = 0

    async def run_once(self) -> None:
        try:
            await self._tick()
        except Exception:
            logger.error("[%s] iteration failed", self.name, exc_info=True)
        finally:
            self.iterations += 1

    async def run(self) -> None:
        logger.info("[%s] started (interval %ss)", self.name, self.interval)
        try:
            while True:
                await self.run_once()
                await self._clock.sleep(self.interval)
        finally:
            logger.info("[%s] stopped", self.name)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
