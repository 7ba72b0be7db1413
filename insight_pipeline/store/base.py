from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from datetime import datetime
from types import TracebackType
from typing import Any

from insight_pipeline.models import (
    AnalysisJob,
    Batch,
    DeadLetterJob,
    Event,
    Insight,
)


class Store(ABC):
    """Abstract store for every pipeline entity.

    Implementations must override every ``@abstractmethod``.

    State transitions are *conditional*: each one names the state it
    expects to find and returns whether a row actually moved.  Writes
    made on behalf of a claimed job additionally require the job's
    current ``lease_id`` to match, so a worker that lost its claim
    cannot overwrite the new owner's progress.

    The default ``atomic()`` is a no-op suitable for in-memory stores;
    database-backed stores override it to provide a transactional
    boundary.
    """

    # ── Lifecycle ────────────────────────────────────────────────────

    @abstractmethod
    async def init(self) -> None:
        """Create tables / indices (idempotent)."""
        ...

    @abstractmethod
    async def reset(self) -> None:
        """Drop all data and recreate from scratch."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release any held resources (connections, file handles)."""
        ...

    async def __aenter__(self) -> Store:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Wrap multiple operations in a single commit.

        The default implementation is a no-op (each operation is
        auto-committed).  Database-backed stores override this to open
        a session, yield, then commit-or-rollback.
        """
        yield

    # ── Events & batches ─────────────────────────────────────────────

    @abstractmethod
    async def append_event(self, event: Event, *, now: datetime) -> tuple[Event, Batch]:
        """Add *event* to the most recent OPEN batch, creating one if needed.

        Inserting the event and incrementing ``event_count`` happen
        together.  Returns the stored event (``batch_id`` set) and the
        batch as it looks after the increment.
        """
        ...

    @abstractmethod
    async def create_batch(self, batch: Batch) -> Batch:
        """Persist a new batch and return it."""
        ...

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Batch | None:
        """Return a batch by ID, or ``None``."""
        ...

    @abstractmethod
    async def list_batches(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Batch]:
        """Return batches ordered by ``created_at``, optionally filtered."""
        ...

    @abstractmethod
    async def list_sealable_batches(
        self,
        *,
        min_events: int,
        created_before: datetime,
    ) -> list[Batch]:
        """Return OPEN batches that are full or older than *created_before*."""
        ...

    @abstractmethod
    async def seal_batch(self, batch_id: str, *, now: datetime) -> bool:
        """OPEN → SEALED, setting ``sealed_at``.  ``False`` if not OPEN."""
        ...

    @abstractmethod
    async def mark_batch_analyzed(self, batch_id: str, *, now: datetime) -> bool:
        """SEALED → ANALYZED.  ``False`` if not SEALED."""
        ...

    @abstractmethod
    async def archive_batches(
        self,
        *,
        analyzed_before: datetime,
        now: datetime,
    ) -> int:
        """ANALYZED → ARCHIVED for batches last updated before the cutoff.

        Returns the number of batches moved.
        """
        ...

    @abstractmethod
    async def get_batch_events(self, batch_id: str) -> list[Event]:
        """Return a batch's events ordered by ``timestamp`` then ``event_id``."""
        ...

    # ── Jobs ─────────────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: AnalysisJob) -> AnalysisJob:
        """Persist a new job.

        Raises ``JobAlreadyExistsError`` if the batch already has a
        PENDING or RUNNING job.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> AnalysisJob | None:
        """Return a job by ID, or ``None``."""
        ...

    @abstractmethod
    async def list_jobs(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[AnalysisJob]:
        """Return jobs newest first, optionally filtered by status."""
        ...

    @abstractmethod
    async def find_job_for_batch(
        self,
        batch_id: str,
        statuses: Collection[str],
    ) -> AnalysisJob | None:
        """Return the newest job of *batch_id* whose status is in *statuses*."""
        ...

    @abstractmethod
    async def find_claimable_job(self, *, now: datetime) -> AnalysisJob | None:
        """Return the oldest PENDING job whose lock is unset or expired."""
        ...

    @abstractmethod
    async def claim_job(
        self,
        job_id: str,
        *,
        lease_id: str,
        lock_until: datetime,
        now: datetime,
    ) -> AnalysisJob | None:
        """PENDING → RUNNING with a fresh lease.

        The update is conditioned on the same predicate as
        ``find_claimable_job``; a caller that lost the race gets ``None``.
        """
        ...

    async def claim_next_job(
        self,
        *,
        lease_id: str,
        lock_until: datetime,
        now: datetime,
    ) -> AnalysisJob | None:
        """Find the oldest claimable job and try to claim it once."""
        candidate = await self.find_claimable_job(now=now)
        if candidate is None:
            return None
        return await self.claim_job(
            candidate.job_id,
            lease_id=lease_id,
            lock_until=lock_until,
            now=now,
        )

    @abstractmethod
    async def complete_job(
        self,
        job_id: str,
        lease_id: str,
        *,
        analysis_time_ms: int,
        now: datetime,
    ) -> bool:
        """RUNNING → SUCCESS under *lease_id*."""
        ...

    @abstractmethod
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
        """RUNNING → PENDING under *lease_id*, not claimable before *retry_at*."""
        ...

    @abstractmethod
    async def release_job(
        self,
        job_id: str,
        lease_id: str | None,
        *,
        now: datetime,
    ) -> bool:
        """RUNNING → PENDING under *lease_id*, clearing lock and lease.

        ``attempt_count`` is left unchanged.
        """
        ...

    @abstractmethod
    async def dead_letter_job(
        self,
        job_id: str,
        lease_id: str | None,
        entry: DeadLetterJob,
        *,
        now: datetime,
    ) -> bool:
        """RUNNING → FAILED under *lease_id* and record *entry*.

        Both writes happen together or not at all.
        """
        ...

    @abstractmethod
    async def list_stuck_jobs(self, *, updated_before: datetime) -> list[AnalysisJob]:
        """Return RUNNING jobs not updated since *updated_before*."""
        ...

    @abstractmethod
    async def list_expired_leases(self, *, now: datetime) -> list[AnalysisJob]:
        """Return RUNNING jobs whose ``lock_expires_at`` has passed."""
        ...

    # ── Insights ─────────────────────────────────────────────────────

    @abstractmethod
    async def save_insight(self, insight: Insight) -> tuple[Insight, bool]:
        """Store *insight* unless its batch already has one.

        Returns ``(stored, created)``; on a duplicate, ``stored`` is the
        existing row and ``created`` is ``False``.
        """
        ...

    @abstractmethod
    async def get_insight(self, batch_id: str) -> Insight | None:
        """Return the insight for a batch, or ``None``."""
        ...

    @abstractmethod
    async def list_insights(self, *, limit: int | None = None) -> list[Insight]:
        """Return insights newest first."""
        ...

    # ── Dead letters ─────────────────────────────────────────────────

    @abstractmethod
    async def list_dead_letters(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterJob]:
        """Return DLQ entries newest first."""
        ...

    @abstractmethod
    async def count_dead_letters(self, *, since: datetime | None = None) -> int:
        """Count DLQ entries, optionally only those failed at or after *since*."""
        ...

    # ── Aggregates ───────────────────────────────────────────────────

    @abstractmethod
    async def count_jobs_by_status(self) -> dict[str, int]: ...

    @abstractmethod
    async def count_jobs_updated_since(self, status: str, since: datetime) -> int:
        """Count jobs in *status* whose last update is at or after *since*."""
        ...

    @abstractmethod
    async def oldest_job(self, status: str) -> AnalysisJob | None: ...

    @abstractmethod
    async def count_batches_by_status(self) -> dict[str, int]: ...

    @abstractmethod
    async def oldest_batch(self, status: str) -> Batch | None: ...

    @abstractmethod
    async def count_events(self) -> int: ...

    @abstractmethod
    async def recent_analysis_times(self, limit: int = 100) -> list[int]:
        """Return ``analysis_time_ms`` of the most recent SUCCESS jobs."""
        ...
