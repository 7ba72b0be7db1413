from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from insight_pipeline.db.models import Base
from insight_pipeline.db.tables import (
    AnalysisJobRow,
    BatchRow,
    DeadLetterJobRow,
    EventRow,
    InsightRow,
)
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

logger = logging.getLogger(__name__)


class SqlStore(Store):
    """Store backed by any async SQLAlchemy database URL.

    Production runs on PostgreSQL (``postgresql+asyncpg://``, see
    ``PostgresStore``); local runs and tests use
    ``sqlite+aiosqlite:///path.db``.  ORM rows are translated to and
    from domain dataclasses at the boundary.

    Conditional transitions are single ``UPDATE ... WHERE`` statements
    whose ``rowcount`` tells the caller whether it won.
    """

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self._url = url
        self._engine = create_async_engine(url, echo=False, **engine_kwargs)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        # Scoped per asyncio task.
        self._scoped_session: ContextVar[AsyncSession | None] = ContextVar(
            f"insight_pipeline_session_{id(self)}", default=None
        )

    @asynccontextmanager
    async def _auto_session(self) -> AsyncIterator[AsyncSession]:
        """Yield the scoped session if inside ``atomic()``, else a fresh
        auto-committing session that is closed after use."""
        scoped = self._scoped_session.get()
        if scoped is not None:
            yield scoped
            return
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def reset(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await self.init()

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        session = self._session_factory()
        token = self._scoped_session.set(session)
        try:
            yield
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
            self._scoped_session.reset(token)

    # ── Events & batches ─────────────────────────────────────────────

    async def append_event(self, event: Event, *, now: datetime) -> tuple[Event, Batch]:
        async with self._auto_session() as s:
            stmt = (
                select(BatchRow)
                .where(BatchRow.status == BatchStatus.OPEN.value)
                .order_by(BatchRow.created_at.desc())
                .limit(1)
                .with_for_update()
            )
            batch_row = (await s.execute(stmt)).scalar_one_or_none()

            if batch_row is not None:
                # The sealer may have won between the select and now.
                bumped = await s.execute(
                    update(BatchRow)
                    .where(
                        BatchRow.batch_id == batch_row.batch_id,
                        BatchRow.status == BatchStatus.OPEN.value,
                    )
                    .values(event_count=BatchRow.event_count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if bumped.rowcount != 1:
                    batch_row = None

            if batch_row is None:
                batch_row = BatchRow(
                    status=BatchStatus.OPEN.value,
                    event_count=1,
                    created_at=now,
                    updated_at=now,
                )
                s.add(batch_row)
                await s.flush()

            s.add(
                EventRow(
                    event_id=event.event_id,
                    batch_id=batch_row.batch_id,
                    event_type=event.event_type,
                    user_id=event.user_id,
                    timestamp=ensure_utc(event.timestamp),
                    data=event.metadata,
                    created_at=now,
                )
            )
            await s.flush()

            refreshed = await s.execute(
                select(BatchRow)
                .where(BatchRow.batch_id == batch_row.batch_id)
                .execution_options(populate_existing=True)
            )
            batch = _batch_from_orm(refreshed.scalar_one())

        event.batch_id = batch.batch_id
        event.created_at = now
        return event, batch

    async def create_batch(self, batch: Batch) -> Batch:
        async with self._auto_session() as s:
            s.add(
                BatchRow(
                    batch_id=batch.batch_id,
                    status=batch.status,
                    event_count=batch.event_count,
                    sealed_at=batch.sealed_at,
                    created_at=batch.created_at,
                    updated_at=batch.updated_at,
                )
            )
            await s.flush()
        return batch

    async def get_batch(self, batch_id: str) -> Batch | None:
        async with self._auto_session() as s:
            row = await s.get(BatchRow, batch_id, populate_existing=True)
            return _batch_from_orm(row) if row is not None else None

    async def list_batches(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[Batch]:
        async with self._auto_session() as s:
            stmt = select(BatchRow).order_by(BatchRow.created_at)
            if status is not None:
                stmt = stmt.where(BatchRow.status == status)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list((await s.execute(stmt)).scalars().all())
        return [_batch_from_orm(r) for r in rows]

    async def list_sealable_batches(
        self,
        *,
        min_events: int,
        created_before: datetime,
    ) -> list[Batch]:
        async with self._auto_session() as s:
            stmt = (
                select(BatchRow)
                .where(
                    BatchRow.status == BatchStatus.OPEN.value,
                    or_(
                        BatchRow.event_count >= min_events,
                        BatchRow.created_at < created_before,
                    ),
                )
                .order_by(BatchRow.created_at)
            )
            rows = list((await s.execute(stmt)).scalars().all())
        return [_batch_from_orm(r) for r in rows]

    async def _transition_batch(
        self,
        batch_id: str,
        expected: BatchStatus,
        **values: Any,
    ) -> bool:
        async with self._auto_session() as s:
            result = await s.execute(
                update(BatchRow)
                .where(
                    BatchRow.batch_id == batch_id,
                    BatchRow.status == expected.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def seal_batch(self, batch_id: str, *, now: datetime) -> bool:
        return await self._transition_batch(
            batch_id,
            BatchStatus.OPEN,
            status=BatchStatus.SEALED.value,
            sealed_at=now,
            updated_at=now,
        )

    async def mark_batch_analyzed(self, batch_id: str, *, now: datetime) -> bool:
        return await self._transition_batch(
            batch_id,
            BatchStatus.SEALED,
            status=BatchStatus.ANALYZED.value,
            updated_at=now,
        )

    async def archive_batches(
        self,
        *,
        analyzed_before: datetime,
        now: datetime,
    ) -> int:
        async with self._auto_session() as s:
            result = await s.execute(
                update(BatchRow)
                .where(
                    BatchRow.status == BatchStatus.ANALYZED.value,
                    BatchRow.updated_at < analyzed_before,
                )
                .values(status=BatchStatus.ARCHIVED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def get_batch_events(self, batch_id: str) -> list[Event]:
        async with self._auto_session() as s:
            stmt = (
                select(EventRow)
                .where(EventRow.batch_id == batch_id)
                .order_by(EventRow.timestamp, EventRow.event_id)
            )
            rows = list((await s.execute(stmt)).scalars().all())
        return [_event_from_orm(r) for r in rows]

    # ── Jobs ─────────────────────────────────────────────────────────

    async def create_job(self, job: AnalysisJob) -> AnalysisJob:
        existing = await self.find_job_for_batch(job.batch_id, ACTIVE_JOB_STATUSES)
        if existing is not None:
            raise JobAlreadyExistsError(job.batch_id, existing.job_id)
        try:
            async with self._auto_session() as s:
                s.add(
                    AnalysisJobRow(
                        job_id=job.job_id,
                        batch_id=job.batch_id,
                        status=job.status,
                        attempt_count=job.attempt_count,
                        max_attempts=job.max_attempts,
                        trigger_type=job.trigger_type,
                        lock_expires_at=job.lock_expires_at,
                        lease_id=job.lease_id,
                        last_error=job.last_error,
                        error_context=job.error_context,
                        analysis_time_ms=job.analysis_time_ms,
                        created_at=job.created_at,
                        updated_at=job.updated_at,
                    )
                )
                await s.flush()
        except IntegrityError as exc:
            # Another creator inserted an active job after our check.
            raise JobAlreadyExistsError(job.batch_id) from exc
        return job

    async def get_job(self, job_id: str) -> AnalysisJob | None:
        async with self._auto_session() as s:
            row = await s.get(AnalysisJobRow, job_id, populate_existing=True)
            return _job_from_orm(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[AnalysisJob]:
        async with self._auto_session() as s:
            stmt = select(AnalysisJobRow).order_by(AnalysisJobRow.created_at.desc())
            if status is not None:
                stmt = stmt.where(AnalysisJobRow.status == status)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list((await s.execute(stmt)).scalars().all())
        return [_job_from_orm(r) for r in rows]

    async def find_job_for_batch(
        self,
        batch_id: str,
        statuses: Collection[str],
    ) -> AnalysisJob | None:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow)
                .where(
                    AnalysisJobRow.batch_id == batch_id,
                    AnalysisJobRow.status.in_(list(statuses)),
                )
                .order_by(AnalysisJobRow.created_at.desc())
                .limit(1)
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _job_from_orm(row) if row is not None else None

    @staticmethod
    def _claimable(now: datetime) -> ColumnElement[bool]:
        return and_(
            AnalysisJobRow.status == JobStatus.PENDING.value,
            or_(
                AnalysisJobRow.lock_expires_at.is_(None),
                AnalysisJobRow.lock_expires_at < now,
            ),
        )

    async def find_claimable_job(self, *, now: datetime) -> AnalysisJob | None:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow)
                .where(self._claimable(now))
                .order_by(AnalysisJobRow.created_at, AnalysisJobRow.job_id)
                .limit(1)
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _job_from_orm(row) if row is not None else None

    async def claim_job(
        self,
        job_id: str,
        *,
        lease_id: str,
        lock_until: datetime,
        now: datetime,
    ) -> AnalysisJob | None:
        async with self._auto_session() as s:
            result = await s.execute(
                update(AnalysisJobRow)
                .where(AnalysisJobRow.job_id == job_id, self._claimable(now))
                .values(
                    status=JobStatus.RUNNING.value,
                    lease_id=lease_id,
                    lock_expires_at=lock_until,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = await s.get(AnalysisJobRow, job_id, populate_existing=True)
            return _job_from_orm(row) if row is not None else None

    async def _update_held(
        self,
        s: AsyncSession,
        job_id: str,
        lease_id: str | None,
        /,
        **values: Any,
    ) -> bool:
        lease_match = (
            AnalysisJobRow.lease_id.is_(None)
            if lease_id is None
            else AnalysisJobRow.lease_id == lease_id
        )
        result = await s.execute(
            update(AnalysisJobRow)
            .where(
                AnalysisJobRow.job_id == job_id,
                AnalysisJobRow.status == JobStatus.RUNNING.value,
                lease_match,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete_job(
        self,
        job_id: str,
        lease_id: str,
        *,
        analysis_time_ms: int,
        now: datetime,
    ) -> bool:
        async with self._auto_session() as s:
            return await self._update_held(
                s,
                job_id,
                lease_id,
                status=JobStatus.SUCCESS.value,
                analysis_time_ms=analysis_time_ms,
                lock_expires_at=None,
                lease_id=None,
                updated_at=now,
            )

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
        async with self._auto_session() as s:
            return await self._update_held(
                s,
                job_id,
                lease_id,
                status=JobStatus.PENDING.value,
                attempt_count=attempt_count,
                lock_expires_at=retry_at,
                lease_id=None,
                last_error=last_error,
                error_context=error_context,
                updated_at=now,
            )

    async def release_job(
        self,
        job_id: str,
        lease_id: str | None,
        *,
        now: datetime,
    ) -> bool:
        async with self._auto_session() as s:
            return await self._update_held(
                s,
                job_id,
                lease_id,
                status=JobStatus.PENDING.value,
                lock_expires_at=None,
                lease_id=None,
                updated_at=now,
            )

    async def dead_letter_job(
        self,
        job_id: str,
        lease_id: str | None,
        entry: DeadLetterJob,
        *,
        now: datetime,
    ) -> bool:
        async with self._auto_session() as s:
            moved = await self._update_held(
                s,
                job_id,
                lease_id,
                status=JobStatus.FAILED.value,
                last_error=entry.last_error,
                error_context=entry.error_context,
                lock_expires_at=None,
                lease_id=None,
                updated_at=now,
            )
            if not moved:
                return False
            s.add(
                DeadLetterJobRow(
                    dlq_id=entry.dlq_id,
                    job_id=entry.job_id,
                    batch_id=entry.batch_id,
                    attempt_count=entry.attempt_count,
                    last_error=entry.last_error,
                    error_context=entry.error_context,
                    failed_at=entry.failed_at,
                )
            )
            await s.flush()
        return True

    async def list_stuck_jobs(self, *, updated_before: datetime) -> list[AnalysisJob]:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow)
                .where(
                    AnalysisJobRow.status == JobStatus.RUNNING.value,
                    AnalysisJobRow.updated_at < updated_before,
                )
                .order_by(AnalysisJobRow.updated_at)
            )
            rows = list((await s.execute(stmt)).scalars().all())
        return [_job_from_orm(r) for r in rows]

    async def list_expired_leases(self, *, now: datetime) -> list[AnalysisJob]:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow)
                .where(
                    AnalysisJobRow.status == JobStatus.RUNNING.value,
                    AnalysisJobRow.lock_expires_at.is_not(None),
                    AnalysisJobRow.lock_expires_at < now,
                )
                .order_by(AnalysisJobRow.lock_expires_at)
            )
            rows = list((await s.execute(stmt)).scalars().all())
        return [_job_from_orm(r) for r in rows]

    # ── Insights ─────────────────────────────────────────────────────

    async def save_insight(self, insight: Insight) -> tuple[Insight, bool]:
        existing = await self.get_insight(insight.batch_id)
        if existing is not None:
            return existing, False
        try:
            async with self._auto_session() as s:
                s.add(
                    InsightRow(
                        id=insight.id,
                        batch_id=insight.batch_id,
                        summary=insight.summary,
                        confidence=insight.confidence,
                        patterns=list(insight.patterns),
                        event_count=insight.event_count,
                        time_window=insight.time_window,
                        created_at=insight.created_at,
                    )
                )
                await s.flush()
        except IntegrityError:
            existing = await self.get_insight(insight.batch_id)
            if existing is None:
                raise
            logger.info("Insight for batch %s already stored", insight.batch_id)
            return existing, False
        return insight, True

    async def get_insight(self, batch_id: str) -> Insight | None:
        async with self._auto_session() as s:
            stmt = select(InsightRow).where(InsightRow.batch_id == batch_id)
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _insight_from_orm(row) if row is not None else None

    async def list_insights(self, *, limit: int | None = None) -> list[Insight]:
        async with self._auto_session() as s:
            stmt = select(InsightRow).order_by(InsightRow.created_at.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list((await s.execute(stmt)).scalars().all())
        return [_insight_from_orm(r) for r in rows]

    # ── Dead letters ─────────────────────────────────────────────────

    async def list_dead_letters(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterJob]:
        async with self._auto_session() as s:
            stmt = select(DeadLetterJobRow).order_by(DeadLetterJobRow.failed_at.desc())
            if since is not None:
                stmt = stmt.where(DeadLetterJobRow.failed_at >= since)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list((await s.execute(stmt)).scalars().all())
        return [_dead_letter_from_orm(r) for r in rows]

    async def count_dead_letters(self, *, since: datetime | None = None) -> int:
        async with self._auto_session() as s:
            stmt = select(func.count(DeadLetterJobRow.dlq_id))
            if since is not None:
                stmt = stmt.where(DeadLetterJobRow.failed_at >= since)
            return (await s.execute(stmt)).scalar() or 0

    # ── Aggregates ───────────────────────────────────────────────────

    async def count_jobs_by_status(self) -> dict[str, int]:
        async with self._auto_session() as s:
            stmt = select(AnalysisJobRow.status, func.count()).group_by(
                AnalysisJobRow.status
            )
            return {status: count for status, count in (await s.execute(stmt)).all()}

    async def count_jobs_updated_since(self, status: str, since: datetime) -> int:
        async with self._auto_session() as s:
            stmt = select(func.count(AnalysisJobRow.job_id)).where(
                AnalysisJobRow.status == status,
                AnalysisJobRow.updated_at >= since,
            )
            return (await s.execute(stmt)).scalar() or 0

    async def oldest_job(self, status: str) -> AnalysisJob | None:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow)
                .where(AnalysisJobRow.status == status)
                .order_by(AnalysisJobRow.created_at)
                .limit(1)
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _job_from_orm(row) if row is not None else None

    async def count_batches_by_status(self) -> dict[str, int]:
        async with self._auto_session() as s:
            stmt = select(BatchRow.status, func.count()).group_by(BatchRow.status)
            return {status: count for status, count in (await s.execute(stmt)).all()}

    async def oldest_batch(self, status: str) -> Batch | None:
        async with self._auto_session() as s:
            stmt = (
                select(BatchRow)
                .where(BatchRow.status == status)
                .order_by(BatchRow.created_at)
                .limit(1)
            )
            row = (await s.execute(stmt)).scalar_one_or_none()
            return _batch_from_orm(row) if row is not None else None

    async def count_events(self) -> int:
        async with self._auto_session() as s:
            return (await s.execute(select(func.count(EventRow.event_id)))).scalar() or 0

    async def recent_analysis_times(self, limit: int = 100) -> list[int]:
        async with self._auto_session() as s:
            stmt = (
                select(AnalysisJobRow.analysis_time_ms)
                .where(
                    AnalysisJobRow.status == JobStatus.SUCCESS.value,
                    AnalysisJobRow.analysis_time_ms.is_not(None),
                )
                .order_by(AnalysisJobRow.updated_at.desc())
                .limit(limit)
            )
            return [int(v) for v in (await s.execute(stmt)).scalars().all()]


# ── ORM → domain converters ──────────────────────────────────────────


def _batch_from_orm(row: BatchRow) -> Batch:
    return Batch(
        batch_id=row.batch_id,
        status=row.status,
        event_count=row.event_count,
        sealed_at=ensure_utc(row.sealed_at),
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=ensure_utc(row.updated_at),  # type: ignore[arg-type]
    )


def _event_from_orm(row: EventRow) -> Event:
    return Event(
        event_type=row.event_type,
        user_id=row.user_id,
        timestamp=ensure_utc(row.timestamp),  # type: ignore[arg-type]
        batch_id=row.batch_id,
        metadata=dict(row.data or {}),
        event_id=row.event_id,
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
    )


def _job_from_orm(row: AnalysisJobRow) -> AnalysisJob:
    return AnalysisJob(
        batch_id=row.batch_id,
        status=row.status,
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        trigger_type=row.trigger_type,
        job_id=row.job_id,
        lock_expires_at=ensure_utc(row.lock_expires_at),
        lease_id=row.lease_id,
        last_error=row.last_error,
        error_context=row.error_context,
        analysis_time_ms=row.analysis_time_ms,
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=ensure_utc(row.updated_at),  # type: ignore[arg-type]
    )


def _dead_letter_from_orm(row: DeadLetterJobRow) -> DeadLetterJob:
    return DeadLetterJob(
        job_id=row.job_id,
        batch_id=row.batch_id,
        attempt_count=row.attempt_count,
        last_error=row.last_error,
        error_context=dict(row.error_context or {}),
        dlq_id=row.dlq_id,
        failed_at=ensure_utc(row.failed_at),  # type: ignore[arg-type]
    )


def _insight_from_orm(row: InsightRow) -> Insight:
    return Insight(
        batch_id=row.batch_id,
        summary=row.summary,
        confidence=row.confidence,
        patterns=list(row.patterns or []),
        event_count=row.event_count,
        id=row.id,
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
    )
