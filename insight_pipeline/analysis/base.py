from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from insight_pipeline.models import Event


class AnalysisResult(BaseModel):
    """What the analysis function returns for one batch."""

    summary: str = Field(
        description="Concise 1-2 sentence summary of user behaviour patterns"
    )
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence from 0 to 1")
    patterns: list[str] = Field(
        default_factory=list,
        description="Short names of the behaviour patterns observed",
    )

    @classmethod
    def json_schema(cls) -> dict:
        return cls.model_json_schema()


class Analyzer(ABC):
    """Opaque analysis function applied to a sealed batch's events.

    Implementations signal failure by raising ``AnalysisError`` with a
    ``kind`` that tells the pipeline whether a retry can help.  Any other
    exception is treated as transient.
    """

    @abstractmethod
    async def analyze(self, events: list[Event]) -> AnalysisResult: ...
