from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from insight_pipeline.models.utils import generate_id, utcnow


class BatchStatus(enum.StrEnum):
    OPEN = "OPEN"
    SEALED = "SEALED"
    ANALYZED = "ANALYZED"
    ARCHIVED = "ARCHIVED"


@dataclass
class Batch:
    """A time/size-bounded group of events.

    ``sealed_at`` is set exactly once, at the OPEN → SEALED transition.
    """

    batch_id: str = field(default_factory=generate_id)
    status: str = BatchStatus.OPEN.value
    event_count: int = 0
    sealed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def time_window(self) -> str:
        return f"batch_{self.batch_id}"

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()
