from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from insight_pipeline.analysis.base import AnalysisResult, Analyzer
from insight_pipeline.errors import (
    BatchNotFoundError,
    BatchNotSealedError,
    EmptyBatchError,
)
from insight_pipeline.models import (
    AnalysisJob,
    BatchStatus,
    DeadLetterJob,
    Event,
    Insight,
)
from insight_pipeline.models.utils import generate_id
from insight_pipeline.pipeline.circuit_breaker import CircuitBreaker
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.retry import (
    ErrorContext,
    ErrorType,
    backoff_delay_ms,
    classify_error,
    should_retry,
)
from insight_pipeline.pipeline.scheduler import Clock, SystemClock
from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_REASON = "MAX_ATTEMPTS_EXCEEDED"


@dataclass
class WorkerStats:
    """Counters for one worker process plus the store-wide job counts."""

    worker_id: str
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    lost_leases: int = 0
    jobs_by_status: dict[str, int] = field(default_factory=dict)


class JobWorker:
    """Claim PENDING jobs one at a time and run the analysis for them.

    Every write made while holding a claim is conditioned on the claim's
    lease, so if recovery has already taken the job back, this worker's
    late result is dropped instead of overwriting newer state.
    """

    def __init__(
        self,
        store: Store,
        analyzer: Analyzer,
        breaker: CircuitBreaker | None = None,
        config: PipelineConfig | None = None,
        *,
        clock: Clock | None = None,
        rng: Callable[[], float] = random.random,
        worker_id: str | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()
        self._breaker = breaker or CircuitBreaker(
            failure_threshold=self._config.failure_threshold,
            cooldown_seconds=self._config.cooldown,
            half_open_max_requests=self._config.half_open_max_requests,
            clock=self._clock,
        )
        self._rng = rng
        self._stats = WorkerStats(worker_id=worker_id or generate_id()[:8])

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def run_once(self) -> AnalysisJob | None:
        """Claim at most one job and process it.  Returns the claimed job."""
        job = await self.claim_next()
        if job is None:
            return None
        await self.process(job)
        return job

    async def claim_next(self) -> AnalysisJob | None:
        now = self._clock.now()
        job = await self._store.claim_next_job(
            lease_id=generate_id(),
            lock_until=now + timedelta(seconds=self._config.job_lock_timeout),
            now=now,
        )
        if job is None:
            return None
        self._stats.claimed += 1
        logger.info(
            "[%s] Claimed job for batch %s (attempt %d/%d, worker %s)",
            job.job_id,
            job.batch_id,
            job.attempt_count + 1,
            job.max_attempts,
            self._stats.worker_id,
        )
        return job

    async def process(self, job: AnalysisJob) -> bool:
        """Run the analysis for a claimed job.  ``True`` if it completed."""
        assert job.lease_id is not None, "process() needs a claimed job"
        try:
            events = await self._load_events(job.batch_id)
            started = time.perf_counter()
            result = await self._breaker.execute(lambda: self._analyze(events))
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            return await self._complete(job, events, result, elapsed_ms)
        except Exception as exc:
            await self.handle_failure(job, exc)
            return False

    async def _load_events(self, batch_id: str) -> list[Event]:
        batch = await self._store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        if batch.status != BatchStatus.SEALED.value:
            raise BatchNotSealedError(batch_id, batch.status)
        events = await self._store.get_batch_events(batch_id)
        if not events:
            raise EmptyBatchError(batch_id)
        return events

    async def _analyze(self, events: list[Event]) -> AnalysisResult:
        return await asyncio.wait_for(
            self._analyzer.analyze(events),
            timeout=self._config.analysis_timeout,
        )

    async def _complete(
        self,
        job: AnalysisJob,
        events: list[Event],
        result: AnalysisResult,
        elapsed_ms: int,
    ) -> bool:
        now = self._clock.now()
        insight, created = await self._store.save_insight(
            Insight(
                batch_id=job.batch_id,
                summary=result.summary,
                confidence=result.confidence,
                patterns=list(result.patterns),
                event_count=len(events),
                created_at=now,
            )
        )
        if not created:
            logger.info(
                "[%s] Insight %s for batch %s already existed",
                job.job_id,
                insight.id,
                job.batch_id,
            )

        async with self._store.atomic():
            completed = await self._store.complete_job(
                job.job_id,
                job.lease_id,  # type: ignore[arg-type]
                analysis_time_ms=elapsed_ms,
                now=now,
            )
            if completed:
                await self._store.mark_batch_analyzed(job.batch_id, now=now)

        if not completed:
            self._stats.lost_leases += 1
            logger.warning(
                "[%s] Lost lease before completion; result for batch %s kept, "
                "job state left to its new owner",
                job.job_id,
                job.batch_id,
            )
            return False

        self._stats.succeeded += 1
        logger.info(
            "[%s] Completed batch %s in %dms (%d events, confidence %.2f)",
            job.job_id,
            job.batch_id,
            elapsed_ms,
            len(events),
            result.confidence,
        )
        return True

    async def handle_failure(self, job: AnalysisJob, exc: BaseException) -> None:
        """Requeue the job with backoff, or dead-letter it."""
        error = classify_error(exc)
        now = self._clock.now()

        if should_retry(error, job.attempt_count, job.max_attempts):
            delay_ms = backoff_delay_ms(
                job.attempt_count,
                self._config.base_retry_delay,
                rng=self._rng,
            )
            retry_at = now + timedelta(milliseconds=delay_ms)
            attempt = job.attempt_count + 1
            context = ErrorContext.from_error(
                error,
                attempt=attempt,
                occurred_at=now,
                retry_at=retry_at,
            )
            requeued = await self._store.requeue_job(
                job.job_id,
                job.lease_id,
                attempt_count=attempt,
                retry_at=retry_at,
                last_error=error.message,
                error_context=context.to_dict(),
                now=now,
            )
            if requeued:
                self._stats.retried += 1
                logger.warning(
                    "[%s] %s error %s (attempt %d/%d), retrying in %.1fs: %s",
                    job.job_id,
                    error.type,
                    error.code,
                    attempt,
                    job.max_attempts,
                    delay_ms / 1000,
                    error.message,
                )
            else:
                self._lost_lease_on_failure(job, error.code)
            return

        reason = error.code if error.type == ErrorType.FATAL else MAX_ATTEMPTS_REASON
        context = ErrorContext.from_error(
            error,
            attempt=job.attempt_count,
            occurred_at=now,
            reason=reason,
        )
        entry = DeadLetterJob(
            job_id=job.job_id,
            batch_id=job.batch_id,
            attempt_count=job.attempt_count,
            last_error=error.message,
            error_context=context.to_dict(),
            failed_at=now,
        )
        moved = await self._store.dead_letter_job(
            job.job_id, job.lease_id, entry, now=now
        )
        if moved:
            self._stats.dead_lettered += 1
            logger.error(
                "[%s] Moved to DLQ (%s, %d attempts) for batch %s: %s",
                job.job_id,
                reason,
                job.attempt_count,
                job.batch_id,
                error.message,
            )
        else:
            self._lost_lease_on_failure(job, error.code)

    def _lost_lease_on_failure(self, job: AnalysisJob, code: str) -> None:
        self._stats.lost_leases += 1
        logger.warning(
            "[%s] Lost lease before recording %s failure; dropping it",
            job.job_id,
            code,
        )

    async def stats(self) -> WorkerStats:
        self._stats.jobs_by_status = await self._store.count_jobs_by_status()
        return self._stats
