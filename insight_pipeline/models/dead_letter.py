from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from insight_pipeline.models.utils import generate_id, utcnow


@dataclass(frozen=True)
class DeadLetterJob:
    """Immutable forensic snapshot of a job that cannot succeed."""

    job_id: str
    batch_id: str
    attempt_count: int
    last_error: str
    error_context: dict[str, Any] = field(default_factory=dict)

    dlq_id: str = field(default_factory=generate_id)
    failed_at: datetime = field(default_factory=utcnow)
