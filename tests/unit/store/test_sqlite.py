from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import inspect

from insight_pipeline.models import AnalysisJob, Event
from insight_pipeline.store.sqlite import SqliteStore
from insight_pipeline.testing.store_test_kit import StoreTestKit

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class TestSqliteStore(StoreTestKit):
    @pytest.fixture()
    async def store(self, tmp_path: Path) -> AsyncGenerator[SqliteStore]:
        sqlite = SqliteStore(str(tmp_path / "kit.db"))
        await sqlite.init()
        yield sqlite
        await sqlite.close()


async def test_init_creates_tables(sqlite_store: SqliteStore) -> None:
    async with sqlite_store._engine.connect() as conn:
        names = await conn.run_sync(lambda c: inspect(c).get_table_names())
    assert {
        "batches",
        "events",
        "analysis_jobs",
        "dead_letter_jobs",
        "insights",
    } <= set(names)


async def test_datetimes_come_back_as_utc(sqlite_store: SqliteStore) -> None:
    _, batch = await sqlite_store.append_event(
        Event(event_type="view", user_id="u1", timestamp=T0), now=T0
    )
    loaded = await sqlite_store.get_batch(batch.batch_id)
    assert loaded is not None
    assert loaded.created_at == T0
    assert loaded.created_at.tzinfo is not None

    events = await sqlite_store.get_batch_events(batch.batch_id)
    assert events[0].timestamp == T0


async def test_data_survives_reopen(tmp_path: Path) -> None:
    path = str(tmp_path / "persist.db")
    first = SqliteStore(path)
    await first.init()
    _, batch = await first.append_event(
        Event(event_type="view", user_id="u1", timestamp=T0), now=T0
    )
    assert await first.seal_batch(batch.batch_id, now=T0)
    job = await first.create_job(AnalysisJob(batch_id=batch.batch_id))
    await first.close()

    second = SqliteStore(path)
    await second.init()
    try:
        reloaded = await second.get_job(job.job_id)
        assert reloaded is not None
        assert reloaded.batch_id == batch.batch_id
        assert (await second.get_batch(batch.batch_id)).status == "SEALED"  # type: ignore[union-attr]
    finally:
        await second.close()


async def test_atomic_rolls_back_on_error(sqlite_store: SqliteStore) -> None:
    _, batch = await sqlite_store.append_event(
        Event(event_type="view", user_id="u1", timestamp=T0), now=T0
    )
    with pytest.raises(RuntimeError):
        async with sqlite_store.atomic():
            assert await sqlite_store.seal_batch(batch.batch_id, now=T0)
            raise RuntimeError("abort")

    reloaded = await sqlite_store.get_batch(batch.batch_id)
    assert reloaded is not None
    assert reloaded.status == "OPEN"


async def test_reset_drops_data(sqlite_store: SqliteStore) -> None:
    await sqlite_store.append_event(
        Event(event_type="view", user_id="u1", timestamp=T0), now=T0
    )
    await sqlite_store.reset()
    assert await sqlite_store.count_events() == 0
