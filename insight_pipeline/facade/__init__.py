from insight_pipeline.facade.core import InsightPipeline
from insight_pipeline.facade.types import CycleResult

__all__ = [
    "CycleResult",
    "InsightPipeline",
]
