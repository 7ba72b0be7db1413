"""Public return types for the insight_pipeline API."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CycleResult:
    """Result from :meth:`InsightPipeline.run_cycle`."""

    sealed: list[str] = field(default_factory=list)
    archived: int = 0
    jobs_created: list[str] = field(default_factory=list)
    processed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    dead_lettered: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return not (
            self.sealed
            or self.archived
            or self.jobs_created
            or self.processed
            or self.requeued
            or self.dead_lettered
            or self.released
        )
