from __future__ import annotations

from pathlib import Path

from insight_pipeline.store.sql import SqlStore


class SqliteStore(SqlStore):
    """``SqlStore`` on a local SQLite file via aiosqlite.

    Meant for single-host runs and tests; conditional updates still
    fence concurrent coroutines, but there is no cross-host locking.
    """

    def __init__(self, path: str = "insight_pipeline.db") -> None:
        self.path = Path(path).expanduser()
        super().__init__(f"sqlite+aiosqlite:///{self.path}")
