"""Main facade for the insight_pipeline library."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from insight_pipeline.facade.types import CycleResult
from insight_pipeline.pipeline.batches import EventIngestor
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.jobs import TriggerResult
from insight_pipeline.pipeline.metrics import PipelineMetrics, collect_metrics
from insight_pipeline.pipeline.recovery import RecoveryStats
from insight_pipeline.pipeline.runner import PipelineRunner
from insight_pipeline.pipeline.worker import WorkerStats

if TYPE_CHECKING:
    from insight_pipeline.analysis.base import Analyzer
    from insight_pipeline.models import (
        AnalysisJob,
        Batch,
        DeadLetterJob,
        Event,
        Insight,
    )
    from insight_pipeline.pipeline.scheduler import Clock
    from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)


class InsightPipeline:
    """Main entry point for the insight_pipeline library.

    Wires the store, analyzer and every pipeline component together and
    exposes one-shot operations (for scripts, admin tools and tests) as
    well as the long-running :meth:`run`.

    Usage::

        from insight_pipeline.store.memory import InMemoryStore
        from insight_pipeline.analysis.litellm import LiteLLMAnalyzer

        pipeline = InsightPipeline(store=InMemoryStore(), analyzer=LiteLLMAnalyzer())
        await pipeline.init()
        await pipeline.record_event("page_view", "user-1", metadata={"page": "/"})
        await pipeline.run()
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
        self._store = store
        self._runner = PipelineRunner(
            store, analyzer, config, clock=clock, workers=workers
        )
        self._ingestor = EventIngestor(store, clock=self._runner.clock)

    @property
    def store(self) -> Store:
        return self._store

    @property
    def runner(self) -> PipelineRunner:
        return self._runner

    @property
    def config(self) -> PipelineConfig:
        return self._runner.config

    async def init(self) -> None:
        """Create missing tables / indices (non-destructive)."""
        await self._store.init()

    async def reset(self) -> None:
        """Drop all data and recreate from scratch."""
        await self._store.reset()

    async def close(self) -> None:
        await self._store.close()

    # ── Ingestion ────────────────────────────────────────────────────

    async def record_event(
        self,
        event_type: str,
        user_id: str,
        *,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Event, Batch]:
        return await self._ingestor.record_event(
            event_type, user_id, timestamp, metadata
        )

    # ── One-shot passes ──────────────────────────────────────────────

    async def seal_batches(self) -> list[str]:
        return await self._runner.sealer.run_once()

    async def archive_batches(self) -> int:
        return await self._runner.archiver.run_once()

    async def create_jobs(self) -> list[AnalysisJob]:
        return await self._runner.creator.run_once()

    async def process_next_job(self) -> AnalysisJob | None:
        """Claim and process one job with the first worker."""
        return await self._runner.workers[0].run_once()

    async def recover(self) -> CycleResult:
        report = await self._runner.recovery.run_once()
        return CycleResult(
            requeued=report.requeued,
            dead_lettered=report.dead_lettered,
            released=report.released,
        )

    async def run_cycle(self, *, max_jobs: int = 100) -> CycleResult:
        """Run every component once, in pipeline order.

        The worker keeps claiming until no job is claimable or *max_jobs*
        have been processed.
        """
        result = CycleResult()
        result.sealed = await self.seal_batches()
        result.archived = await self.archive_batches()
        result.jobs_created = [j.job_id for j in await self.create_jobs()]
        for _ in range(max_jobs):
            job = await self.process_next_job()
            if job is None:
                break
            result.processed.append(job.job_id)
        recovered = await self.recover()
        result.requeued = recovered.requeued
        result.dead_lettered = recovered.dead_lettered
        result.released = recovered.released
        return result

    async def run(self) -> None:
        """Run every loop until SIGINT or SIGTERM."""
        await self._runner.run_until_signalled()

    # ── Admin ────────────────────────────────────────────────────────

    async def trigger_analysis(self, batch_id: str) -> TriggerResult:
        return await self._runner.creator.trigger_analysis(batch_id)

    def reset_circuit_breaker(self) -> None:
        self._runner.breaker.reset()
        logger.info("Circuit breaker reset by operator")

    # ── Observability ────────────────────────────────────────────────

    async def metrics(self) -> PipelineMetrics:
        return await collect_metrics(
            self._store, self._runner.breaker, clock=self._runner.clock
        )

    async def worker_stats(self) -> list[WorkerStats]:
        return [await w.stats() for w in self._runner.workers]

    async def recovery_stats(self) -> RecoveryStats:
        return await self._runner.recovery.stats()

    async def list_batches(
        self, *, status: str | None = None, limit: int | None = None
    ) -> list[Batch]:
        return await self._store.list_batches(status=status, limit=limit)

    async def list_jobs(
        self, *, status: str | None = None, limit: int | None = None
    ) -> list[AnalysisJob]:
        return await self._store.list_jobs(status=status, limit=limit)

    async def list_dead_letters(
        self, *, since: datetime | None = None, limit: int | None = None
    ) -> list[DeadLetterJob]:
        return await self._store.list_dead_letters(since=since, limit=limit)

    async def list_insights(self, *, limit: int | None = None) -> list[Insight]:
        return await self._store.list_insights(limit=limit)
