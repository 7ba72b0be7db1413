"""Domain models: pure Python dataclasses with no infrastructure dependencies.

These are the canonical types used by the Store protocol and every
pipeline component.  The SQLAlchemy ORM tables used by ``SqlStore``
live separately in ``insight_pipeline.db.tables`` and are mapped
to/from these types at the store boundary.
"""

from insight_pipeline.models.batch import Batch, BatchStatus
from insight_pipeline.models.dead_letter import DeadLetterJob
from insight_pipeline.models.event import Event
from insight_pipeline.models.insight import Insight
from insight_pipeline.models.job import (
    ACTIVE_JOB_STATUSES,
    BLOCKING_JOB_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    AnalysisJob,
    JobStatus,
    TriggerType,
)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "AnalysisJob",
    "BLOCKING_JOB_STATUSES",
    "Batch",
    "BatchStatus",
    "DEFAULT_MAX_ATTEMPTS",
    "DeadLetterJob",
    "Event",
    "Insight",
    "JobStatus",
    "TriggerType",
]
