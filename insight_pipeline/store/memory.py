from __future__ import annotations

from collections import Counter
from collections.abc import Collection
from dataclasses import replace
from datetime import datetime
from typing import Any

from insight_pipeline.errors import JobAlreadyExistsError
from insight_pipeline.models import (
    ACTIVE_JOB_STATUSES,
    AnalysisJob,
    Batch,
    BatchStatus,
    DeadLetterJob,
    Event,
    Insight,
    JobStatus,
)
from insight_pipeline.models.utils import ensure_utc
from insight_pipeline.store.base import Store


class InMemoryStore(Store):
    """Store backed by plain Python dicts.

    Safe within a single asyncio event loop: no method awaits between
    reading and writing, so every conditional update is atomic with
    respect to other coroutines.  Objects are copied on the way in and
    out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._batches: dict[str, Batch] = {}
        self._events: dict[str, Event] = {}
        self._jobs: dict[str, AnalysisJob] = {}
        self._dead_letters: dict[str, DeadLetterJob] = {}
        self._insights: dict[str, Insight] = {}

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        pass

    async def reset(self) -> None:
        self.__init__()  # type: ignore[misc]

    async def close(self) -> None:
        pass

    # ── Events & batches ─────────────────────────────────────────────

    async def append_event(self, event: Event, *, now: datetime) -> tuple[Event, Batch]:
        batch = self._current_open_batch()
        if batch is None:
            batch = Batch(created_at=now, updated_at=now)
            self._batches[batch.batch_id] = batch

        stored = replace(
            event,
            batch_id=batch.batch_id,
            timestamp=ensure_utc(event.timestamp),
            created_at=now,
        )
        self._events[stored.event_id] = stored
        batch.event_count += 1
        batch.updated_at = now
        return replace(stored), replace(batch)

    def _current_open_batch(self) -> Batch | None:
        open_batches = [
            b for b in self._batches.values() if b.status == BatchStatus.OPEN.value
        ]
        if not open_batches:
            return None
        return max(open_batches, key=lambda b: b.created_at)

    async def create_batch(self, batch: Batch) -> Batch:
        self._batches[batch.batch_id] = replace(batch)
        return batch

    async def get_batch(self, batch_id: str) -> Batch | None:
        batch = self._batches.get(batch_id)
        return replace(batch) if batch is not None else None

    async def list_batches(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Batch]:
        batches = list(self._batches.values())
        if status is not None:
            batches = [b for b in batches if b.status == status]
        batches.sort(key=lambda b: b.created_at)
        if limit is not None:
            batches = batches[:limit]
        return [replace(b) for b in batches]

    async def list_sealable_batches(
        self,
        *,
        min_events: int,
        created_before: datetime,
    ) -> list[Batch]:
        return [
            replace(b)
            for b in sorted(self._batches.values(), key=lambda b: b.created_at)
            if b.status == BatchStatus.OPEN.value
            and (b.event_count >= min_events or b.created_at < created_before)
        ]

    async def seal_batch(self, batch_id: str, *, now: datetime) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None or batch.status != BatchStatus.OPEN.value:
            return False
        batch.status = BatchStatus.SEALED.value
        batch.sealed_at = now
        batch.updated_at = now
        return True

    async def mark_batch_analyzed(self, batch_id: str, *, now: datetime) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None or batch.status != BatchStatus.SEALED.value:
            return False
        batch.status = BatchStatus.ANALYZED.value
        batch.updated_at = now
        return True

    async def archive_batches(
        self,
        *,
        analyzed_before: datetime,
        now: datetime,
    ) -> int:
        moved = 0
        for batch in self._batches.values():
            if (
                batch.status == BatchStatus.ANALYZED.value
                and batch.updated_at < analyzed_before
            ):
                batch.status = BatchStatus.ARCHIVED.value
                batch.updated_at = now
                moved += 1
        return moved

    async def get_batch_events(self, batch_id: str) -> list[Event]:
        events = [e for e in self._events.values() if e.batch_id == batch_id]
        events.sort(key=lambda e: (e.timestamp, e.event_id))
        return [replace(e) for e in events]

    # ── Jobs ─────────────────────────────────────────────────────────

    async def create_job(self, job: AnalysisJob) -> AnalysisJob:
        for existing in self._jobs.values():
            if (
                existing.batch_id == job.batch_id
                and existing.status in ACTIVE_JOB_STATUSES
            ):
                raise JobAlreadyExistsError(job.batch_id, existing.job_id)
        self._jobs[job.job_id] = replace(job)
        return job

    async def get_job(self, job_id: str) -> AnalysisJob | None:
        job = self._jobs.get(job_id)
        return replace(job) if job is not None else None

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[AnalysisJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return [replace(j) for j in jobs]

    async def find_job_for_batch(
        self,
        batch_id: str,
        statuses: Collection[str],
    ) -> AnalysisJob | None:
        matches = [
            j
            for j in self._jobs.values()
            if j.batch_id == batch_id and j.status in statuses
        ]
        if not matches:
            return None
        return replace(max(matches, key=lambda j: j.created_at))

    @staticmethod
    def _is_claimable(job: AnalysisJob, now: datetime) -> bool:
        return job.status == JobStatus.PENDING.value and (
            job.lock_expires_at is None or job.lock_expires_at < now
        )

    async def find_claimable_job(self, *, now: datetime) -> AnalysisJob | None:
        candidates = [j for j in self._jobs.values() if self._is_claimable(j, now)]
        if not candidates:
            return None
        return replace(min(candidates, key=lambda j: (j.created_at, j.job_id)))

    async def claim_job(
        self,
        job_id: str,
        *,
        lease_id: str,
        lock_until: datetime,
        now: datetime,
    ) -> AnalysisJob | None:
        job = self._jobs.get(job_id)
        if job is None or not self._is_claimable(job, now):
            return None
        job.status = JobStatus.RUNNING.value
        job.lease_id = lease_id
        job.lock_expires_at = lock_until
        job.updated_at = now
        return replace(job)

    def _held(self, job_id: str, lease_id: str | None) -> AnalysisJob | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if job.status != JobStatus.RUNNING.value or job.lease_id != lease_id:
            return None
        return job

    async def complete_job(
        self,
        job_id: str,
        lease_id: str,
        *,
        analysis_time_ms: int,
        now: datetime,
    ) -> bool:
        job = self._held(job_id, lease_id)
        if job is None:
            return False
        job.status = JobStatus.SUCCESS.value
        job.analysis_time_ms = analysis_time_ms
        job.lock_expires_at = None
        job.lease_id = None
        job.updated_at = now
        return True

    async def requeue_job(
        self,
        job_id: str,
        lease_id: str | None,
        *,
        attempt_count: int,
        retry_at: datetime,
        last_error: str,
        error_context: dict[str, Any],
        now: datetime,
    ) -> bool:
        job = self._held(job_id, lease_id)
        if job is None:
            return False
        job.status = JobStatus.PENDING.value
        job.attempt_count = attempt_count
        job.lock_expires_at = retry_at
        job.lease_id = None
        job.last_error = last_error
        job.error_context = dict(error_context)
        job.updated_at = now
        return True

    async def release_job(
        self,
        job_id: str,
        lease_id: str | None,
        *,
        now: datetime,
    ) -> bool:
        job = self._held(job_id, lease_id)
        if job is None:
            return False
        job.status = JobStatus.PENDING.value
        job.lock_expires_at = None
        job.lease_id = None
        job.updated_at = now
        return True

    async def dead_letter_job(
        self,
        job_id: str,
        lease_id: str | None,
        entry: DeadLetterJob,
        *,
        now: datetime,
    ) -> bool:
        job = self._held(job_id, lease_id)
        if job is None:
            return False
        job.status = JobStatus.FAILED.value
        job.last_error = entry.last_error
        job.error_context = dict(entry.error_context)
        job.lock_expires_at = None
        job.lease_id = None
        job.updated_at = now
        self._dead_letters[entry.dlq_id] = entry
        return True

    async def list_stuck_jobs(self, *, updated_before: datetime) -> list[AnalysisJob]:
        return [
            replace(j)
            for j in self._jobs.values()
            if j.status == JobStatus.RUNNING.value and j.updated_at < updated_before
        ]

    async def list_expired_leases(self, *, now: datetime) -> list[AnalysisJob]:
        return [
            replace(j)
            for j in self._jobs.values()
            if j.status == JobStatus.RUNNING.value
            and j.lock_expires_at is not None
            and j.lock_expires_at < now
        ]

    # ── Insights ─────────────────────────────────────────────────────

    async def save_insight(self, insight: Insight) -> tuple[Insight, bool]:
        existing = self._insights.get(insight.batch_id)
        if existing is not None:
            return replace(existing), False
        self._insights[insight.batch_id] = replace(insight)
        return insight, True

    async def get_insight(self, batch_id: str) -> Insight | None:
        insight = self._insights.get(batch_id)
        return replace(insight) if insight is not None else None

    async def list_insights(self, *, limit: int | None = None) -> list[Insight]:
        insights = sorted(
            self._insights.values(), key=lambda i: i.created_at, reverse=True
        )
        if limit is not None:
            insights = insights[:limit]
        return [replace(i) for i in insights]

    # ── Dead letters ─────────────────────────────────────────────────

    async def list_dead_letters(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterJob]:
        entries = list(self._dead_letters.values())
        if since is not None:
            entries = [e for e in entries if e.failed_at >= since]
        entries.sort(key=lambda e: e.failed_at, reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return entries

    async def count_dead_letters(self, *, since: datetime | None = None) -> int:
        if since is None:
            return len(self._dead_letters)
        return sum(1 for e in self._dead_letters.values() if e.failed_at >= since)

    # ── Aggregates ───────────────────────────────────────────────────

    async def count_jobs_by_status(self) -> dict[str, int]:
        return dict(Counter(j.status for j in self._jobs.values()))

    async def count_jobs_updated_since(self, status: str, since: datetime) -> int:
        return sum(
            1
            for j in self._jobs.values()
            if j.status == status and j.updated_at >= since
        )

    async def oldest_job(self, status: str) -> AnalysisJob | None:
        jobs = [j for j in self._jobs.values() if j.status == status]
        if not jobs:
            return None
        return replace(min(jobs, key=lambda j: j.created_at))

    async def count_batches_by_status(self) -> dict[str, int]:
        return dict(Counter(b.status for b in self._batches.values()))

    async def oldest_batch(self, status: str) -> Batch | None:
        batches = [b for b in self._batches.values() if b.status == status]
        if not batches:
            return None
        return replace(min(batches, key=lambda b: b.created_at))

    async def count_events(self) -> int:
        return len(self._events)

    async def recent_analysis_times(self, limit: int = 100) -> list[int]:
        done = [
            j
            for j in self._jobs.values()
            if j.status == JobStatus.SUCCESS.value and j.analysis_time_ms is not None
        ]
        done.sort(key=lambda j: j.updated_at, reverse=True)
        return [j.analysis_time_ms for j in done[:limit] if j.analysis_time_ms is not None]
