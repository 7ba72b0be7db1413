from insight_pipeline.facade import CycleResult, InsightPipeline
from insight_pipeline.pipeline.config import PipelineConfig

__all__ = [
    "CycleResult",
    "InsightPipeline",
    "PipelineConfig",
]
