"""Read-only pipeline aggregates, computed on demand."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from insight_pipeline.models import BatchStatus, JobStatus
from insight_pipeline.pipeline.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerMetrics,
)
from insight_pipeline.pipeline.scheduler import Clock, SystemClock
from insight_pipeline.store.base import Store

LATENCY_SAMPLE_SIZE = 100


class JobMetrics(BaseModel):
    by_status: dict[str, int] = Field(default_factory=dict)
    pending: int = 0
    running: int = 0
    success_last_hour: int = 0
    failed_last_hour: int = 0
    oldest_pending_age_seconds: int = 0


class BatchMetrics(BaseModel):
    by_status: dict[str, int] = Field(default_factory=dict)
    open: int = 0
    sealed: int = 0
    analyzed: int = 0
    archived: int = 0
    total_events: int = 0
    oldest_open_age_seconds: int = 0


class PerformanceMetrics(BaseModel):
    avg_analysis_time_ms: int = 0
    p95_analysis_time_ms: int = 0
    p99_analysis_time_ms: int = 0
    max_analysis_time_ms: int = 0
    completed_jobs_count: int = 0


class DeadLetterMetrics(BaseModel):
    total: int = 0
    last_24_hours: int = 0


class PipelineMetrics(BaseModel):
    timestamp: datetime
    jobs: JobMetrics
    batches: BatchMetrics
    performance: PerformanceMetrics
    circuit_breaker: CircuitBreakerMetrics | None = None
    dead_letter_queue: DeadLetterMetrics


def percentile(sorted_values: list[int], fraction: float) -> int:
    """Nearest-rank percentile of an ascending list (0 when empty)."""
    if not sorted_values:
        return 0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def summarize_latencies(times_ms: list[int]) -> PerformanceMetrics:
    if not times_ms:
        return PerformanceMetrics()
    times = sorted(times_ms)
    return PerformanceMetrics(
        avg_analysis_time_ms=round(sum(times) / len(times)),
        p95_analysis_time_ms=percentile(times, 0.95),
        p99_analysis_time_ms=percentile(times, 0.99),
        max_analysis_time_ms=times[-1],
        completed_jobs_count=len(times),
    )


def _age_seconds(now: datetime, then: datetime | None) -> int:
    if then is None:
        return 0
    return max(int((now - then).total_seconds()), 0)


async def collect_metrics(
    store: Store,
    breaker: CircuitBreaker | None = None,
    *,
    clock: Clock | None = None,
) -> PipelineMetrics:
    now = (clock or SystemClock()).now()
    hour_ago = now - timedelta(hours=1)

    job_counts = await store.count_jobs_by_status()
    oldest_pending = await store.oldest_job(JobStatus.PENDING.value)
    jobs = JobMetrics(
        by_status=job_counts,
        pending=job_counts.get(JobStatus.PENDING.value, 0),
        running=job_counts.get(JobStatus.RUNNING.value, 0),
        success_last_hour=await store.count_jobs_updated_since(
            JobStatus.SUCCESS.value, hour_ago
        ),
        failed_last_hour=await store.count_jobs_updated_since(
            JobStatus.FAILED.value, hour_ago
        ),
        oldest_pending_age_seconds=_age_seconds(
            now, oldest_pending.created_at if oldest_pending else None
        ),
    )

    batch_counts = await store.count_batches_by_status()
    oldest_open = await store.oldest_batch(BatchStatus.OPEN.value)
    batches = BatchMetrics(
        by_status=batch_counts,
        open=batch_counts.get(BatchStatus.OPEN.value, 0),
        sealed=batch_counts.get(BatchStatus.SEALED.value, 0),
        analyzed=batch_counts.get(BatchStatus.ANALYZED.value, 0),
        archived=batch_counts.get(BatchStatus.ARCHIVED.value, 0),
        total_events=await store.count_events(),
        oldest_open_age_seconds=_age_seconds(
            now, oldest_open.created_at if oldest_open else None
        ),
    )

    performance = summarize_latencies(
        await store.recent_analysis_times(LATENCY_SAMPLE_SIZE)
    )

    dead_letters = DeadLetterMetrics(
        total=await store.count_dead_letters(),
        last_24_hours=await store.count_dead_letters(since=now - timedelta(hours=24)),
    )

    return PipelineMetrics(
        timestamp=now,
        jobs=jobs,
        batches=batches,
        performance=performance,
        circuit_breaker=breaker.get_metrics() if breaker is not None else None,
        dead_letter_queue=dead_letters,
    )
