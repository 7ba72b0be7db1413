from insight_pipeline.pipeline.batches import BatchArchiver, BatchSealer, EventIngestor
from insight_pipeline.pipeline.circuit_breaker import CircuitBreaker, CircuitState
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.pipeline.jobs import JobCreator, TriggerOutcome, TriggerResult
from insight_pipeline.pipeline.metrics import PipelineMetrics, collect_metrics
from insight_pipeline.pipeline.recovery import RecoveryLoop
from insight_pipeline.pipeline.retry import (
    ErrorType,
    JobError,
    backoff_delay_ms,
    classify_error,
)
from insight_pipeline.pipeline.runner import PipelineRunner
from insight_pipeline.pipeline.scheduler import Clock, PeriodicLoop, SystemClock
from insight_pipeline.pipeline.worker import JobWorker

__all__ = [
    "BatchArchiver",
    "BatchSealer",
    "CircuitBreaker",
    "CircuitState",
    "Clock",
    "ErrorType",
    "EventIngestor",
    "JobCreator",
    "JobError",
    "JobWorker",
    "PeriodicLoop",
    "PipelineConfig",
    "PipelineMetrics",
    "PipelineRunner",
    "RecoveryLoop",
    "SystemClock",
    "TriggerOutcome",
    "TriggerResult",
    "backoff_delay_ms",
    "classify_error",
    "collect_metrics",
]
