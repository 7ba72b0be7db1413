from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from insight_pipeline.models.utils import generate_id, utcnow


@dataclass
class Event:
    """A single user-behaviour event, owned by exactly one batch."""

    event_type: str
    user_id: str
    timestamp: datetime
    batch_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    event_id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
