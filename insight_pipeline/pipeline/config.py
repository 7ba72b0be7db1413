from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class PipelineConfig:
    """Tunables for every loop in the pipeline.  Durations are in seconds."""

    # Sealing
    batch_size_threshold: int = 100
    batch_time_window: float = 600
    seal_interval: float = 60

    # Job creation
    job_creation_interval: float = 120
    max_attempts: int = 5

    # Worker
    worker_poll_interval: float = 5
    job_lock_timeout: float = 600
    analysis_timeout: float = 60
    base_retry_delay: float = 60

    # Recovery
    recovery_interval: float = 60
    stuck_job_timeout: float = 900
    forensics_window: float = 3600
    forensics_limit: int = 10

    # Circuit breaker
    failure_threshold: int = 5
    cooldown: float = 600
    half_open_max_requests: int = 1

    # Archiving
    archive_after_days: int = 30

    def __post_init__(self) -> None:
        if self.batch_size_threshold < 1:
            raise ValueError("batch_size_threshold must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.half_open_max_requests < 1:
            raise ValueError("half_open_max_requests must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Build from a ``[pipeline]`` TOML table, ignoring unknown keys."""
        known = {f.name: f.type for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            if key not in known:
                continue
            values[key] = int(raw) if known[key] == "int" else float(raw)
        return cls(**values)
