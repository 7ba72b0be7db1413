from __future__ import annotations

from sqlalchemy.sql import text

from insight_pipeline.db.models import Base
from insight_pipeline.store.sql import SqlStore


class PostgresStore(SqlStore):
    """``SqlStore`` on PostgreSQL via asyncpg, with a pooled engine."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 20,
    ) -> None:
        url = f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{database}"
        super().__init__(url, pool_size=pool_size, max_overflow=max_overflow)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(text("CREATE SCHEMA IF NOT EXISTS public"))
            await conn.run_sync(Base.metadata.create_all)

    async def reset(self) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(text("DROP SCHEMA IF EXISTS public CASCADE"))
        await self.init()
