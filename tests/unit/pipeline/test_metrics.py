from __future__ import annotations

from datetime import timedelta

from insight_pipeline.models import DeadLetterJob
from insight_pipeline.pipeline.circuit_breaker import CircuitBreaker, CircuitState
from insight_pipeline.pipeline.metrics import (
    collect_metrics,
    percentile,
    summarize_latencies,
)
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.testing import ManualClock
from tests.conftest import pending_job


def test_percentile_nearest_rank() -> None:
    values = list(range(1, 101))
    assert percentile(values, 0.95) == 96
    assert percentile(values, 0.99) == 100
    assert percentile([7], 0.99) == 7
    assert percentile([], 0.5) == 0


def test_summarize_latencies() -> None:
    perf = summarize_latencies([300, 100, 200])
    assert perf.avg_analysis_time_ms == 200
    assert perf.max_analysis_time_ms == 300
    assert perf.p95_analysis_time_ms == 300
    assert perf.completed_jobs_count == 3


def test_summarize_no_latencies() -> None:
    perf = summarize_latencies([])
    assert perf.avg_analysis_time_ms == 0
    assert perf.completed_jobs_count == 0


async def test_empty_store(store: InMemoryStore, clock: ManualClock) -> None:
    metrics = await collect_metrics(store, clock=clock)
    assert metrics.timestamp == clock.now()
    assert metrics.jobs.pending == 0
    assert metrics.batches.total_events == 0
    assert metrics.performance.completed_jobs_count == 0
    assert metrics.dead_letter_queue.total == 0
    assert metrics.circuit_breaker is None


async def test_collect_metrics(store: InMemoryStore, clock: ManualClock) -> None:
    pending = await pending_job(store, clock)
    clock.advance(1)
    done = await pending_job(store, clock)
    clock.advance(1)
    failed = await pending_job(store, clock)

    for job, lease in ((done, "a"), (failed, "b")):
        await store.claim_job(
            job.job_id, lease_id=lease, lock_until=clock.now(), now=clock.now()
        )
    await store.complete_job(done.job_id, "a", analysis_time_ms=250, now=clock.now())
    await store.dead_letter_job(
        failed.job_id,
        "b",
        DeadLetterJob(
            job_id=failed.job_id,
            batch_id=failed.batch_id,
            attempt_count=5,
            last_error="x",
            failed_at=clock.now(),
        ),
        now=clock.now(),
    )
    clock.advance(minutes=5)

    breaker = CircuitBreaker(clock=clock)
    metrics = await collect_metrics(store, breaker, clock=clock)

    assert metrics.jobs.by_status == {"PENDING": 1, "SUCCESS": 1, "FAILED": 1}
    assert metrics.jobs.pending == 1
    assert metrics.jobs.success_last_hour == 1
    assert metrics.jobs.failed_last_hour == 1
    assert metrics.jobs.oldest_pending_age_seconds == int(
        (clock.now() - pending.created_at).total_seconds()
    )

    assert metrics.batches.sealed == 3
    assert metrics.batches.total_events == 9
    assert metrics.performance.avg_analysis_time_ms == 250
    assert metrics.dead_letter_queue.total == 1
    assert metrics.dead_letter_queue.last_24_hours == 1
    assert metrics.circuit_breaker is not None
    assert metrics.circuit_breaker.state == CircuitState.CLOSED


async def test_counts_only_last_hour(store: InMemoryStore, clock: ManualClock) -> None:
    job = await pending_job(store, clock)
    await store.claim_job(
        job.job_id, lease_id="a", lock_until=clock.now(), now=clock.now()
    )
    await store.complete_job(job.job_id, "a", analysis_time_ms=10, now=clock.now())
    clock.advance(timedelta(hours=2).total_seconds())

    metrics = await collect_metrics(store, clock=clock)
    assert metrics.jobs.success_last_hour == 0
    assert metrics.performance.completed_jobs_count == 1
