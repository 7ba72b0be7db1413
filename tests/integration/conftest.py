from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest

from insight_pipeline.store.postgres import PostgresStore


def pytest_collection_modifyitems(items: list, config) -> None:  # noqa: ANN001
    """Auto-mark every test in the integration directory."""
    marker = pytest.mark.integration
    skip = pytest.mark.skip(reason="POSTGRES_HOST not set")
    for item in items:
        if "integration" not in str(item.fspath):
            continue
        item.add_marker(marker)
        if not os.getenv("POSTGRES_HOST"):
            item.add_marker(skip)


class Settings:
    def __init__(self) -> None:
        self.host = os.getenv("POSTGRES_HOST", "localhost")
        self.port = int(os.getenv("POSTGRES_PORT", "5432"))
        self.database = os.getenv("POSTGRES_DB", "insight_pipeline_test")
        self.user = os.getenv("POSTGRES_USER", "postgres")
        self.password = os.getenv("POSTGRES_PASSWORD", "postgres")


@pytest.fixture(scope="session")
def settings() -> Settings:
    return Settings()


@pytest.fixture()
async def pg_store(settings: Settings) -> AsyncGenerator[PostgresStore]:
    """A PostgresStore with a clean slate for each test."""
    store = PostgresStore(
        host=settings.host,
        port=settings.port,
        database=settings.database,
        user=settings.user,
        password=settings.password,
    )
    await store.reset()

    yield store

    await store.reset()
    await store.close()
