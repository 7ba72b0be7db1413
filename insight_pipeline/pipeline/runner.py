from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable
from typing import Any

from insight_pipeline.analysis.base import Analyzer
from insight_pipeline.pipeline.batches import BatchArchiver, BatchSealer
from insight_pipeline.pipeline.circuit_breaker import CircuitBreaker
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.jobs import JobCreator
from insight_pipeline.pipeline.recovery import RecoveryLoop
from insight_pipeline.pipeline.scheduler import Clock, PeriodicLoop, SystemClock
from insight_pipeline.pipeline.worker import JobWorker
from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Run sealer, job creator, worker(s) and recovery in one process.

    Each component gets its own ``PeriodicLoop``; they share the store,
    the clock and a single circuit breaker.
    """

    def __init__(
        self,
        store: Store,
        analyzer: Analyzer,
        config: PipelineConfig | None = None,
        *,
        clock: Clock | None = None,
        workers: int = 1,
    ) -> None:
        self.config = config or PipelineConfig()
        self.clock = clock or SystemClock()
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            cooldown_seconds=self.config.cooldown,
            half_open_max_requests=self.config.half_open_max_requests,
            clock=self.clock,
        )
        self.sealer = BatchSealer(store, self.config, clock=self.clock)
        self.archiver = BatchArchiver(store, self.config, clock=self.clock)
        self.creator = JobCreator(store, self.config, clock=self.clock)
        self.workers = [
            JobWorker(store, analyzer, self.breaker, self.config, clock=self.clock)
            for _ in range(max(workers, 1))
        ]
        self.recovery = RecoveryLoop(store, self.config, clock=self.clock)

        self.loops = [
            self._loop("sealer", self._seal_and_archive, self.config.seal_interval),
            self._loop(
                "job-creator",
                self.creator.run_once,
                self.config.job_creation_interval,
            ),
            *(
                self._loop(f"worker-{i}", w.run_once, self.config.worker_poll_interval)
                for i, w in enumerate(self.workers)
            ),
            self._loop("recovery", self.recovery.run_once, self.config.recovery_interval),
        ]

    def _loop(
        self, name: str, tick: Callable[[], Awaitable[Any]], interval: float
    ) -> PeriodicLoop:
        return PeriodicLoop(name, tick, interval, clock=self.clock)

    async def _seal_and_archive(self) -> None:
        await self.sealer.run_once()
        await self.archiver.run_once()

    def start(self) -> list[asyncio.Task[None]]:
        return [loop.start() for loop in self.loops]

    async def stop(self) -> None:
        await asyncio.gather(*(loop.stop() for loop in self.loops))
        logger.info("Pipeline stopped")

    async def run_until_signalled(self) -> None:
        """Start every loop and block until SIGINT or SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)

        self.start()
        logger.info("Pipeline running with %d worker(s)", len(self.workers))
        try:
            await stop_event.wait()
            logger.info("Shutdown signal received")
        finally:
            await self.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)
