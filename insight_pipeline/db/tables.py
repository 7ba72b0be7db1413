"""SQLAlchemy tables backing ``SqlStore``.

The partial unique index on ``analysis_jobs.batch_id`` enforces "at most
one PENDING/RUNNING job per batch" at the database level, so two job
creators racing on the same batch cannot both succeed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from insight_pipeline.db.models import Base, TimeStampMixin
from insight_pipeline.models.batch import BatchStatus
from insight_pipeline.models.job import JobStatus, TriggerType
from insight_pipeline.models.utils import generate_id, utcnow

_ACTIVE_JOB_PREDICATE = text("status IN ('PENDING', 'RUNNING')")


class BatchRow(TimeStampMixin, Base):
    __tablename__ = "batches"

    batch_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=BatchStatus.OPEN.value,
    )
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sealed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once at OPEN → SEALED",
    )

    __table_args__ = (Index("idx_batches_status_created", "status", "created_at"),)


class EventRow(Base):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
    )
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batches.batch_id"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (Index("idx_events_batch_timestamp", "batch_id", "timestamp"),)


class AnalysisJobRow(TimeStampMixin, Base):
    __tablename__ = "analysis_jobs"

    job_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
    )
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batches.batch_id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=JobStatus.PENDING.value,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    trigger_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=TriggerType.SCHEDULED.value,
    )
    lock_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    lease_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        comment="Fencing token of the current claim",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    analysis_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_analysis_jobs_status_created", "status", "created_at"),
        Index("idx_analysis_jobs_batch_id", "batch_id"),
        Index(
            "uq_analysis_jobs_active_batch",
            "batch_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
        ),
    )


class DeadLetterJobRow(Base):
    __tablename__ = "dead_letter_jobs"

    dlq_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
    )
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    error_context: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("idx_dead_letter_jobs_failed_at", "failed_at"),
        Index("idx_dead_letter_jobs_job_id", "job_id"),
    )


class InsightRow(Base):
    __tablename__ = "insights"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_id,
    )
    batch_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        comment="One insight per batch; duplicates from retries are dropped",
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    patterns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False)
    time_window: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
