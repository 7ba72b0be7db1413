from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from insight_pipeline.models import Batch, Event
from insight_pipeline.models.utils import ensure_utc
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.scheduler import Clock, SystemClock
from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)


class EventIngestor:
    """Append incoming events to the current OPEN batch."""

    def __init__(self, store: Store, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def record_event(
        self,
        event_type: str,
        user_id: str,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Event, Batch]:
        now = self._clock.now()
        event = Event(
            event_type=event_type,
            user_id=user_id,
            timestamp=ensure_utc(timestamp) if timestamp else now,
            metadata=metadata or {},
        )
        stored, batch = await self._store.append_event(event, now=now)
        logger.debug(
            "Recorded %s event %s in batch %s (%d events)",
            event_type,
            stored.event_id,
            batch.batch_id,
            batch.event_count,
        )
        return stored, batch


class BatchSealer:
    """Seal OPEN batches that are full or have been open too long."""

    def __init__(
        self,
        store: Store,
        config: PipelineConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()

    async def run_once(self) -> list[str]:
        """Seal every eligible batch.  Returns the IDs actually sealed."""
        now = self._clock.now()
        cutoff = now - timedelta(seconds=self._config.batch_time_window)
        candidates = await self._store.list_sealable_batches(
            min_events=self._config.batch_size_threshold,
            created_before=cutoff,
        )

        sealed: list[str] = []
        for batch in candidates:
            try:
                if await self._store.seal_batch(batch.batch_id, now=now):
                    sealed.append(batch.batch_id)
                    logger.info(
                        "Sealed batch %s (%d events, open %.0fs)",
                        batch.batch_id,
                        batch.event_count,
                        batch.age_seconds(now),
                    )
                else:
                    logger.debug("Batch %s already sealed elsewhere", batch.batch_id)
            except Exception:
                logger.error(
                    "Failed to seal batch %s, will retry next tick",
                    batch.batch_id,
                    exc_info=True,
                )

        if sealed:
            logger.info("Sealed %d batch(es)", len(sealed))
        return sealed


class BatchArchiver:
    """Move long-analysed batches from ANALYZED to ARCHIVED."""

    def __init__(
        self,
        store: Store,
        config: PipelineConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()

    async def run_once(self) -> int:
        now = self._clock.now()
        cutoff = now - timedelta(days=self._config.archive_after_days)
        archived = await self._store.archive_batches(analyzed_before=cutoff, now=now)
        if archived:
            logger.info("Archived %d batch(es) analysed before %s", archived, cutoff)
        return archived
