from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from insight_pipeline import InsightPipeline
from insight_pipeline.errors import AnalysisError, AnalysisErrorKind
from insight_pipeline.models import BatchStatus, JobStatus
from insight_pipeline.pipeline.circuit_breaker import CircuitState
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.jobs import TriggerOutcome
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.testing import ManualClock, ScriptedAnalyzer


async def _record(pipeline: InsightPipeline, count: int) -> str:
    batch_id = ""
    for i in range(count):
        _, batch = await pipeline.record_event(
            "page_view", f"user-{i}", metadata={"page": f"/p/{i}"}
        )
        batch_id = batch.batch_id
    return batch_id


async def test_full_cycle_analyses_batch(
    pipeline: InsightPipeline, analyzer: ScriptedAnalyzer
) -> None:
    batch_id = await _record(pipeline, 3)

    result = await pipeline.run_cycle()

    assert result.sealed == [batch_id]
    assert len(result.jobs_created) == 1
    assert result.processed == result.jobs_created
    assert analyzer.call_count == 1

    [insight] = await pipeline.list_insights()
    assert insight.batch_id == batch_id
    [batch] = await pipeline.list_batches(status=BatchStatus.ANALYZED.value)
    assert batch.batch_id == batch_id

    assert (await pipeline.run_cycle()).idle


async def test_naive_and_aware_timestamps_in_one_batch(
    pipeline: InsightPipeline, analyzer: ScriptedAnalyzer, clock: ManualClock
) -> None:
    naive = clock.now().replace(tzinfo=None) - timedelta(minutes=1)
    await pipeline.record_event("page_view", "user-1")
    event, _ = await pipeline.record_event("page_view", "user-2", timestamp=naive)
    await pipeline.record_event("checkout", "user-1")
    assert event.timestamp.tzinfo is not None

    result = await pipeline.run_cycle()

    [job_id] = result.processed
    job = await pipeline.store.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.SUCCESS.value
    assert analyzer.calls[0][0].user_id == "user-2"


async def test_small_batch_waits_for_time_window(
    pipeline: InsightPipeline, clock: ManualClock
) -> None:
    await _record(pipeline, 1)
    assert (await pipeline.run_cycle()).idle

    clock.advance(minutes=11)
    result = await pipeline.run_cycle()
    assert len(result.sealed) == 1
    assert len(result.processed) == 1


async def test_failed_job_retried_on_later_cycle(
    pipeline: InsightPipeline, analyzer: ScriptedAnalyzer, clock: ManualClock
) -> None:
    analyzer.push(AnalysisError(AnalysisErrorKind.SERVER, "503"))
    await _record(pipeline, 3)

    first = await pipeline.run_cycle()
    [job] = await pipeline.list_jobs()
    assert first.processed == [job.job_id]
    assert job.status == JobStatus.PENDING.value
    assert job.attempt_count == 1

    clock.advance(minutes=5)
    await pipeline.run_cycle()
    [job] = await pipeline.list_jobs()
    assert job.status == JobStatus.SUCCESS.value
    assert analyzer.call_count == 2


async def test_trigger_and_reset_breaker(pipeline: InsightPipeline) -> None:
    batch_id = await _record(pipeline, 1)
    result = await pipeline.trigger_analysis(batch_id)
    assert result.outcome == TriggerOutcome.CREATED

    async def boom() -> None:
        raise ConnectionError("down")

    breaker = pipeline.runner.breaker
    for _ in range(pipeline.config.failure_threshold):
        with pytest.raises(ConnectionError):
            await breaker.execute(boom)
    assert breaker.state == CircuitState.OPEN
    pipeline.reset_circuit_breaker()
    assert breaker.state == CircuitState.CLOSED


async def test_observability(pipeline: InsightPipeline) -> None:
    await _record(pipeline, 3)
    await pipeline.run_cycle()

    metrics = await pipeline.metrics()
    assert metrics.batches.analyzed == 1
    assert metrics.performance.completed_jobs_count == 1
    assert metrics.circuit_breaker is not None

    [stats] = await pipeline.worker_stats()
    assert stats.succeeded == 1
    recovery = await pipeline.recovery_stats()
    assert recovery.stuck_jobs == 0
    assert await pipeline.list_dead_letters() == []


async def test_runner_loops_process_events(
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    config: PipelineConfig,
    clock: ManualClock,
) -> None:
    pipeline = InsightPipeline(store, analyzer, config, clock=clock, workers=2)
    batch_id = await _record(pipeline, 3)

    pipeline.runner.start()
    try:
        for _ in range(2000):
            if await store.get_insight(batch_id) is not None:
                break
            await asyncio.sleep(0)
    finally:
        await pipeline.runner.stop()

    assert await store.get_insight(batch_id) is not None
    assert all(not loop.running for loop in pipeline.runner.loops)
