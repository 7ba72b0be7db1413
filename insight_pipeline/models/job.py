from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from insight_pipeline.models.utils import generate_id, utcnow

DEFAULT_MAX_ATTEMPTS = 5


class JobStatus(enum.StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TriggerType(enum.StrEnum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"


# A batch may own at most one job in these states at any time.
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset(
    {JobStatus.PENDING.value, JobStatus.RUNNING.value}
)

# Job creation is skipped when a job in any of these states exists.
BLOCKING_JOB_STATUSES: frozenset[str] = ACTIVE_JOB_STATUSES | {
    JobStatus.SUCCESS.value
}


@dataclass
class AnalysisJob:
    """One unit of work: analyse one sealed batch.

    ``lease_id`` identifies the current claim. It is set together with
    ``lock_expires_at`` when the job moves to RUNNING, and every write made
    on behalf of that claim is conditioned on it.
    """

    batch_id: str
    status: str = JobStatus.PENDING.value
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    trigger_type: str = TriggerType.SCHEDULED.value

    job_id: str = field(default_factory=generate_id)
    lock_expires_at: datetime | None = None
    lease_id: str | None = None
    last_error: str | None = None
    error_context: dict[str, Any] | None = None
    analysis_time_ms: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts
