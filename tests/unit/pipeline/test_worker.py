from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from insight_pipeline.analysis.base import AnalysisResult
from insight_pipeline.errors import AnalysisError, AnalysisErrorKind
from insight_pipeline.models import AnalysisJob, Batch, BatchStatus, Event, JobStatus
from insight_pipeline.pipeline.circuit_breaker import CircuitBreaker, CircuitState
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.worker import MAX_ATTEMPTS_REASON, JobWorker
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.testing import HANG, ManualClock, ScriptedAnalyzer
from tests.conftest import pending_job


@pytest.fixture()
def worker(
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    config: PipelineConfig,
    clock: ManualClock,
) -> JobWorker:
    return JobWorker(store, analyzer, config=config, clock=clock, rng=lambda: 0.0)


async def test_no_claimable_job(worker: JobWorker, analyzer: ScriptedAnalyzer) -> None:
    assert await worker.run_once() is None
    assert analyzer.call_count == 0


# ── Success ──────────────────────────────────────────────────────────


async def test_success_stores_insight_and_marks_batch(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    analyzer.push(
        AnalysisResult(summary="Shoppers compare prices", confidence=0.9, patterns=["compare"])
    )

    claimed = await worker.run_once()
    assert claimed is not None and claimed.job_id == job.job_id

    done = await store.get_job(job.job_id)
    assert done is not None
    assert done.status == JobStatus.SUCCESS.value
    assert done.lease_id is None
    assert done.analysis_time_ms is not None and done.analysis_time_ms >= 0

    batch = await store.get_batch(job.batch_id)
    assert batch is not None
    assert batch.status == BatchStatus.ANALYZED.value

    insight = await store.get_insight(job.batch_id)
    assert insight is not None
    assert insight.summary == "Shoppers compare prices"
    assert insight.patterns == ["compare"]
    assert insight.event_count == 3
    assert insight.time_window == f"batch_{job.batch_id}"

    assert len(analyzer.calls[0]) == 3
    stats = await worker.stats()
    assert stats.claimed == 1
    assert stats.succeeded == 1
    assert stats.jobs_by_status == {"SUCCESS": 1}


async def test_events_passed_in_timestamp_order(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    for offset in (20, 0, 10):
        _, batch = await store.append_event(
            Event(
                event_type="view",
                user_id="u",
                timestamp=clock.now() + timedelta(seconds=offset),
            ),
            now=clock.now(),
        )
    await store.seal_batch(batch.batch_id, now=clock.now())
    await store.create_job(AnalysisJob(batch_id=batch.batch_id))

    await worker.run_once()
    stamps = [e.timestamp for e in analyzer.calls[0]]
    assert stamps == sorted(stamps)


# ── Failures ─────────────────────────────────────────────────────────


async def test_transient_failure_requeues_with_backoff(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    analyzer.push(AnalysisError(AnalysisErrorKind.RATE_LIMITED, "slow down"))

    await worker.run_once()

    requeued = await store.get_job(job.job_id)
    assert requeued is not None
    assert requeued.status == JobStatus.PENDING.value
    assert requeued.attempt_count == 1
    assert requeued.lease_id is None
    assert requeued.lock_expires_at == clock.now() + timedelta(seconds=60)
    assert requeued.last_error == "slow down"
    assert requeued.error_context is not None
    assert requeued.error_context["error_code"] == "RATE_LIMITED"
    assert requeued.error_context["error_type"] == "TRANSIENT"
    assert requeued.error_context["attempt"] == 1

    # Not claimable until the backoff has elapsed.
    assert await worker.run_once() is None
    clock.advance(61)
    assert await worker.run_once() is not None


async def test_fatal_failure_dead_letters_immediately(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    analyzer.push(AnalysisError(AnalysisErrorKind.AUTH, "bad key", status_code=401))

    await worker.run_once()

    failed = await store.get_job(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED.value
    [entry] = await store.list_dead_letters()
    assert entry.job_id == job.job_id
    assert entry.attempt_count == 0
    assert entry.error_context["reason"] == "AUTH"
    assert entry.error_context["error_type"] == "FATAL"

    batch = await store.get_batch(job.batch_id)
    assert batch is not None
    assert batch.status == BatchStatus.SEALED.value


async def test_unsealed_batch_is_fatal(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    _, batch = await store.append_event(
        Event(event_type="view", user_id="u1", timestamp=clock.now()), now=clock.now()
    )
    await store.create_job(AnalysisJob(batch_id=batch.batch_id))

    await worker.run_once()

    [entry] = await store.list_dead_letters()
    assert entry.error_context["reason"] == "BATCH_NOT_SEALED"
    assert analyzer.call_count == 0


async def test_sealed_batch_without_events_is_fatal(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    batch = await store.create_batch(
        Batch(
            status=BatchStatus.SEALED.value,
            sealed_at=clock.now(),
            created_at=clock.now(),
            updated_at=clock.now(),
        )
    )
    job = await store.create_job(AnalysisJob(batch_id=batch.batch_id))

    await worker.run_once()

    failed = await store.get_job(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED.value
    [entry] = await store.list_dead_letters()
    assert entry.job_id == job.job_id
    assert entry.error_context["error_code"] == "NO_EVENTS"
    assert entry.last_error == "No events in batch"
    assert analyzer.call_count == 0


async def test_missing_batch_is_fatal(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
) -> None:
    job = await store.create_job(AnalysisJob(batch_id="no-such-batch"))

    await worker.run_once()

    failed = await store.get_job(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED.value
    [entry] = await store.list_dead_letters()
    assert entry.error_context["error_code"] == "NOT_FOUND"
    assert entry.attempt_count == 0
    assert analyzer.call_count == 0


async def test_hanging_analysis_times_out(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    analyzer.push(HANG)

    await worker.run_once()

    requeued = await store.get_job(job.job_id)
    assert requeued is not None
    assert requeued.status == JobStatus.PENDING.value
    assert requeued.error_context is not None
    assert requeued.error_context["error_code"] == "TIMEOUT"


async def test_repeated_timeouts_end_in_dead_letter_queue(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    analyzer.push(*(TimeoutError() for _ in range(6)))

    delays = []
    for expected_attempts in range(1, 6):
        assert await worker.run_once() is not None
        current = await store.get_job(job.job_id)
        assert current is not None
        assert current.status == JobStatus.PENDING.value
        assert current.attempt_count == expected_attempts
        assert current.lock_expires_at is not None
        delays.append(current.lock_expires_at - clock.now())
        clock.advance(hours=1)

    assert delays == [timedelta(seconds=s) for s in (60, 120, 240, 480, 960)]

    assert await worker.run_once() is not None

    failed = await store.get_job(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED.value
    [entry] = await store.list_dead_letters()
    assert entry.attempt_count == 5
    assert entry.error_context["reason"] == MAX_ATTEMPTS_REASON
    assert entry.error_context["error_code"] == "TIMEOUT"
    assert analyzer.call_count == 6

    stats = await worker.stats()
    assert stats.retried == 5
    assert stats.dead_lettered == 1


# ── Fencing ──────────────────────────────────────────────────────────


async def test_lost_lease_drops_late_result(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    claimed = await worker.claim_next()
    assert claimed is not None

    # Recovery takes the job back while the analysis is still running.
    assert await store.release_job(job.job_id, claimed.lease_id, now=clock.now())

    assert not await worker.process(claimed)

    current = await store.get_job(job.job_id)
    assert current is not None
    assert current.status == JobStatus.PENDING.value
    batch = await store.get_batch(job.batch_id)
    assert batch is not None
    assert batch.status == BatchStatus.SEALED.value
    assert await store.get_insight(job.batch_id) is not None
    assert (await worker.stats()).lost_leases == 1


async def test_lost_lease_drops_late_failure(
    worker: JobWorker,
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    clock: ManualClock,
) -> None:
    job = await pending_job(store, clock)
    claimed = await worker.claim_next()
    assert claimed is not None
    assert await store.release_job(job.job_id, claimed.lease_id, now=clock.now())
    analyzer.push(AnalysisError(AnalysisErrorKind.AUTH))

    await worker.process(claimed)

    current = await store.get_job(job.job_id)
    assert current is not None
    assert current.status == JobStatus.PENDING.value
    assert await store.list_dead_letters() == []


async def test_concurrent_workers_process_job_once(
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    config: PipelineConfig,
    clock: ManualClock,
) -> None:
    await pending_job(store, clock)
    workers = [
        JobWorker(store, analyzer, config=config, clock=clock, worker_id=f"w{i}")
        for i in range(4)
    ]

    claimed = await asyncio.gather(*(w.run_once() for w in workers))

    assert len([c for c in claimed if c is not None]) == 1
    assert analyzer.call_count == 1


# ── Circuit breaker ──────────────────────────────────────────────────


async def test_open_circuit_skips_analysis_and_requeues(
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    config: PipelineConfig,
    clock: ManualClock,
) -> None:
    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=600, clock=clock)
    worker = JobWorker(store, analyzer, breaker, config, clock=clock, rng=lambda: 0.0)
    first = await pending_job(store, clock)
    clock.advance(1)
    second = await pending_job(store, clock)
    analyzer.push(ConnectionError("refused"))

    await worker.run_once()
    assert breaker.state == CircuitState.OPEN

    await worker.run_once()
    assert analyzer.call_count == 1

    skipped = await store.get_job(second.job_id)
    assert skipped is not None
    assert skipped.status == JobStatus.PENDING.value
    assert skipped.error_context is not None
    assert skipped.error_context["error_code"] == "CIRCUIT_OPEN"

    failed_first = await store.get_job(first.job_id)
    assert failed_first is not None
    assert failed_first.error_context is not None
    assert failed_first.error_context["error_code"] == "CONNECTION"
