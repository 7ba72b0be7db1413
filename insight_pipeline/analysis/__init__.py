from insight_pipeline.analysis.base import AnalysisResult, Analyzer

__all__ = [
    "AnalysisResult",
    "Analyzer",
]
