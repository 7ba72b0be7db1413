from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from insight_pipeline.errors import (
    BatchNotFoundError,
    InvalidBatchStateError,
    JobAlreadyExistsError,
)
from insight_pipeline.models import (
    ACTIVE_JOB_STATUSES,
    BLOCKING_JOB_STATUSES,
    AnalysisJob,
    Batch,
    BatchStatus,
    JobStatus,
    TriggerType,
)
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.scheduler import Clock, SystemClock
from insight_pipeline.store.base import Store

logger = logging.getLogger(__name__)

_TRIGGERABLE_STATUSES = frozenset(
    {BatchStatus.SEALED.value, BatchStatus.ANALYZED.value}
)


class TriggerOutcome(enum.StrEnum):
    CREATED = "CREATED"
    CONFLICT = "CONFLICT"
    ALREADY_ANALYZED = "ALREADY_ANALYZED"


@dataclass
class TriggerResult:
    outcome: TriggerOutcome
    batch: Batch
    job: AnalysisJob | None = None

    @property
    def message(self) -> str:
        match self.outcome:
            case TriggerOutcome.CREATED:
                return "Analysis job created"
            case TriggerOutcome.CONFLICT:
                return "Analysis already in progress for this batch"
            case TriggerOutcome.ALREADY_ANALYZED:
                return "Batch already analyzed"


class JobCreator:
    """Create one PENDING analysis job per SEALED batch."""

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

    def _new_job(self, batch_id: str, trigger_type: TriggerType) -> AnalysisJob:
        now = self._clock.now()
        return AnalysisJob(
            batch_id=batch_id,
            max_attempts=self._config.max_attempts,
            trigger_type=trigger_type.value,
            created_at=now,
            updated_at=now,
        )

    async def run_once(self) -> list[AnalysisJob]:
        """Create jobs for sealed batches that have none.  Returns new jobs."""
        sealed = await self._store.list_batches(status=BatchStatus.SEALED.value)
        created: list[AnalysisJob] = []

        for batch in sealed:
            existing = await self._store.find_job_for_batch(
                batch.batch_id, BLOCKING_JOB_STATUSES
            )
            if existing is not None:
                continue
            try:
                job = await self._store.create_job(
                    self._new_job(batch.batch_id, TriggerType.SCHEDULED)
                )
            except JobAlreadyExistsError:
                logger.info(
                    "Job for batch %s was created concurrently, skipping",
                    batch.batch_id,
                )
                continue
            created.append(job)
            logger.info(
                "[%s] Created job for batch %s (%d events)",
                job.job_id,
                batch.batch_id,
                batch.event_count,
            )

        if created:
            logger.info("Created %d analysis job(s)", len(created))
        return created

    async def trigger_analysis(self, batch_id: str) -> TriggerResult:
        """Manually request analysis of one batch.

        Raises ``BatchNotFoundError`` for an unknown batch and
        ``InvalidBatchStateError`` when the batch can no longer be
        analysed.  An OPEN batch is sealed first.
        """
        batch = await self._store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        if batch.status == BatchStatus.OPEN.value:
            if await self._store.seal_batch(batch_id, now=self._clock.now()):
                logger.info("Manually sealed batch %s", batch_id)
            batch = await self._store.get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)

        if batch.status not in _TRIGGERABLE_STATUSES:
            raise InvalidBatchStateError(batch_id, batch.status)

        active = await self._store.find_job_for_batch(batch_id, ACTIVE_JOB_STATUSES)
        if active is not None:
            return TriggerResult(TriggerOutcome.CONFLICT, batch, active)

        done = await self._store.find_job_for_batch(batch_id, {JobStatus.SUCCESS.value})
        if done is not None or batch.status == BatchStatus.ANALYZED.value:
            return TriggerResult(TriggerOutcome.ALREADY_ANALYZED, batch, done)

        try:
            job = await self._store.create_job(
                self._new_job(batch_id, TriggerType.MANUAL)
            )
        except JobAlreadyExistsError:
            active = await self._store.find_job_for_batch(
                batch_id, ACTIVE_JOB_STATUSES
            )
            return TriggerResult(TriggerOutcome.CONFLICT, batch, active)

        logger.info("[%s] Manually triggered analysis for batch %s", job.job_id, batch_id)
        return TriggerResult(TriggerOutcome.CREATED, batch, job)
