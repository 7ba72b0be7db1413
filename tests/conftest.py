from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from insight_pipeline.facade import InsightPipeline
from insight_pipeline.models import AnalysisJob, Batch, Event
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.store.base import Store
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.store.sqlite import SqliteStore
from insight_pipeline.testing import ManualClock, ScriptedAnalyzer


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
async def sqlite_store(tmp_path: Path) -> AsyncGenerator[SqliteStore]:
    """A fresh SQLite file per test."""
    store = SqliteStore(str(tmp_path / "pipeline.db"))
    await store.init()
    yield store
    await store.close()


@pytest.fixture()
def analyzer() -> ScriptedAnalyzer:
    return ScriptedAnalyzer()


@pytest.fixture()
def config() -> PipelineConfig:
    """Small thresholds and a short analysis timeout for fast tests."""
    return PipelineConfig(
        batch_size_threshold=3,
        analysis_timeout=0.05,
        failure_threshold=100,
    )


@pytest.fixture()
def pipeline(
    store: InMemoryStore,
    analyzer: ScriptedAnalyzer,
    config: PipelineConfig,
    clock: ManualClock,
) -> InsightPipeline:
    return InsightPipeline(store, analyzer, config, clock=clock)


async def seal_new_batch(
    store: Store, clock: ManualClock, *, events: int = 3
) -> Batch:
    """Append *events* events to the open batch and seal it."""
    batch = None
    for i in range(events):
        _, batch = await store.append_event(
            Event(event_type="page_view", user_id=f"user-{i}", timestamp=clock.now()),
            now=clock.now(),
        )
    assert batch is not None
    assert await store.seal_batch(batch.batch_id, now=clock.now())
    return batch


async def pending_job(
    store: Store, clock: ManualClock, *, max_attempts: int = 5, attempts: int = 0
) -> AnalysisJob:
    """A sealed batch with one PENDING job."""
    batch = await seal_new_batch(store, clock)
    return await store.create_job(
        AnalysisJob(
            batch_id=batch.batch_id,
            max_attempts=max_attempts,
            attempt_count=attempts,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
    )
