from insight_pipeline.store.base import Store
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.store.postgres import PostgresStore
from insight_pipeline.store.sql import SqlStore
from insight_pipeline.store.sqlite import SqliteStore

__all__ = [
    "InMemoryStore",
    "PostgresStore",
    "SqlStore",
    "SqliteStore",
    "Store",
]
