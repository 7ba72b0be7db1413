"""Crash recovery for analysis jobs.

A worker that dies mid-job leaves its job RUNNING.  Two sweeps bring
such jobs back:

* **stuck sweep**: RUNNING and not updated for ``stuck_job_timeout``.
  Counts as a failed attempt: requeued with backoff, or dead-lettered
  once attempts are exhausted.
* **expired-lock sweep**: RUNNING with ``lock_expires_at`` in the
  past.  Released back to PENDING without touching ``attempt_count``.

Each write is conditioned on the lease seen during the scan, so a worker
that finishes at the same moment either wins outright or loses cleanly.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from pydantic import BaseModel

from insight_pipeline.models import AnalysisJob, DeadLetterJob
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.retry import (
    ErrorContext,
    ErrorType,
    JobError,
    backoff_delay_ms,
)
from insight_pipeline.pipeline.scheduler import Clock, SystemClock
from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)

STUCK_JOB_CODE = "STUCK_JOB"
STUCK_JOB_MAX_ATTEMPTS = "STUCK_JOB_MAX_ATTEMPTS"


class RecoveryStats(BaseModel):
    stuck_jobs: int
    dead_letters_total: int
    dead_letters_last_hour: int


@dataclass
class RecoveryReport:
    """What one recovery pass did."""

    requeued: list[str] = field(default_factory=list)
    dead_lettered: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    recent_failures: list[DeadLetterJob] = field(default_factory=list)


class RecoveryLoop:
    def __init__(
        self,
        store: Store,
        config: PipelineConfig | None = None,
        *,
        clock: Clock | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()
        self._rng = rng

    async def run_once(self) -> RecoveryReport:
        report = RecoveryReport()
        await self.recover_stuck_jobs(report)
        await self.release_expired_leases(report)
        report.recent_failures = await self.log_recent_failures()
        if report.requeued or report.dead_lettered or report.released:
            logger.info(
                "Recovery pass: %d requeued, %d dead-lettered, %d released",
                len(report.requeued),
                len(report.dead_lettered),
                len(report.released),
            )
        return report

    async def recover_stuck_jobs(
        self, report: RecoveryReport | None = None
    ) -> RecoveryReport:
        report = report or RecoveryReport()
        now = self._clock.now()
        cutoff = now - timedelta(seconds=self._config.stuck_job_timeout)
        stuck = await self._store.list_stuck_jobs(updated_before=cutoff)

        for job in stuck:
            try:
                if job.attempts_exhausted:
                    if await self._dead_letter_stuck(job):
                        report.dead_lettered.append(job.job_id)
                elif await self._requeue_stuck(job):
                    report.requeued.append(job.job_id)
            except Exception:
                logger.error(
                    "[%s] Failed to recover stuck job", job.job_id, exc_info=True
                )
        return report

    def _stuck_error(self) -> JobError:
        minutes = self._config.stuck_job_timeout / 60
        return JobError(
            ErrorType.TRANSIENT,
            STUCK_JOB_CODE,
            f"Job stuck in RUNNING for over {minutes:g} minutes",
        )

    async def _requeue_stuck(self, job: AnalysisJob) -> bool:
        now = self._clock.now()
        error = self._stuck_error()
        delay_ms = backoff_delay_ms(
            job.attempt_count, self._config.base_retry_delay, rng=self._rng
        )
        retry_at = now + timedelta(milliseconds=delay_ms)
        attempt = job.attempt_count + 1
        context = ErrorContext.from_error(
            error,
            attempt=attempt,
            occurred_at=now,
            retry_at=retry_at,
            recovered_from_stuck=True,
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
            logger.warning(
                "[%s] Recovered stuck job for batch %s (attempt %d/%d)",
                job.job_id,
                job.batch_id,
                attempt,
                job.max_attempts,
            )
        else:
            logger.info("[%s] Stuck job changed hands during recovery", job.job_id)
        return requeued

    async def _dead_letter_stuck(self, job: AnalysisJob) -> bool:
        now = self._clock.now()
        error = self._stuck_error()
        context = ErrorContext.from_error(
            error,
            attempt=job.attempt_count,
            occurred_at=now,
            reason=STUCK_JOB_MAX_ATTEMPTS,
            recovered_from_stuck=True,
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
            logger.error(
                "[%s] Stuck job exhausted %d attempts, moved to DLQ",
                job.job_id,
                job.attempt_count,
            )
        return moved

    async def release_expired_leases(
        self, report: RecoveryReport | None = None
    ) -> RecoveryReport:
        report = report or RecoveryReport()
        now = self._clock.now()
        expired = await self._store.list_expired_leases(now=now)

        for job in expired:
            try:
                if await self._store.release_job(job.job_id, job.lease_id, now=now):
                    report.released.append(job.job_id)
                    logger.warning(
                        "[%s] Lock expired at %s, released back to PENDING",
                        job.job_id,
                        job.lock_expires_at,
                    )
            except Exception:
                logger.error(
                    "[%s] Failed to release expired lock", job.job_id, exc_info=True
                )
        return report

    async def log_recent_failures(self) -> list[DeadLetterJob]:
        """Log the newest DLQ entries from the forensics window."""
        since = self._clock.now() - timedelta(seconds=self._config.forensics_window)
        recent = await self._store.list_dead_letters(
            since=since, limit=self._config.forensics_limit
        )
        if recent:
            logger.warning("%d job(s) dead-lettered in the last hour", len(recent))
            for entry in recent:
                logger.warning(
                    "[%s] DLQ batch=%s attempts=%d at %s: %s",
                    entry.job_id,
                    entry.batch_id,
                    entry.attempt_count,
                    entry.failed_at.isoformat(),
                    entry.last_error,
                )
        return recent

    async def stats(self) -> RecoveryStats:
        now = self._clock.now()
        cutoff = now - timedelta(seconds=self._config.stuck_job_timeout)
        stuck = await self._store.list_stuck_jobs(updated_before=cutoff)
        return RecoveryStats(
            stuck_jobs=len(stuck),
            dead_letters_total=await self._store.count_dead_letters(),
            dead_letters_last_hour=await self._store.count_dead_letters(
                since=now - timedelta(hours=1)
            ),
        )
