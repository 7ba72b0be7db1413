from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from insight_pipeline.models.utils import generate_id, utcnow


@dataclass
class Insight:
    """Stored output of a successful batch analysis (one per batch)."""

    batch_id: str
    summary: str
    confidence: float
    patterns: list[str]
    event_count: int

    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def time_window(self) -> str:
        return f"batch_{self.batch_id}"
