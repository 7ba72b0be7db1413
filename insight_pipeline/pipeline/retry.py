"""Error classification and retry delays for analysis jobs."""

from __future__ import annotations

import enum
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel

from insight_pipeline.errors import (
    AnalysisError,
    AnalysisErrorKind,
    CircuitOpenError,
    PipelineInvariantError,
)

MAX_BACKOFF_EXPONENT = 5
JITTER_FRACTION = 0.1


class ErrorType(enum.StrEnum):
    TRANSIENT = "TRANSIENT"
    FATAL = "FATAL"


_FATAL_KINDS = frozenset(
    {
        AnalysisErrorKind.AUTH,
        AnalysisErrorKind.NOT_FOUND,
        AnalysisErrorKind.VALIDATION,
    }
)


@dataclass(frozen=True)
class JobError:
    type: ErrorType
    code: str
    message: str

    @property
    def is_transient(self) -> bool:
        return self.type == ErrorType.TRANSIENT


class ErrorContext(BaseModel):
    """Structured ``error_context`` stored on a job and its DLQ entry."""

    error_type: ErrorType
    error_code: str
    message: str
    attempt: int
    occurred_at: datetime
    retry_at: datetime | None = None
    reason: str | None = None
    recovered_from_stuck: bool = False

    @classmethod
    def from_error(
        cls,
        error: JobError,
        *,
        attempt: int,
        occurred_at: datetime,
        **extra: object,
    ) -> ErrorContext:
        return cls(
            error_type=error.type,
            error_code=error.code,
            message=error.message,
            attempt=attempt,
            occurred_at=occurred_at,
            **extra,  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


def classify_error(exc: BaseException) -> JobError:
    """Decide whether *exc* is worth retrying.

    Decided on exception type and tag, never on message text.  Anything
    unrecognised is transient; ``max_attempts`` bounds how often it is
    retried.
    """
    message = str(exc) or type(exc).__name__

    if isinstance(exc, AnalysisError):
        error_type = ErrorType.FATAL if exc.kind in _FATAL_KINDS else ErrorType.TRANSIENT
        return JobError(error_type, exc.kind.value, message)
    if isinstance(exc, PipelineInvariantError):
        return JobError(ErrorType.FATAL, exc.code, message)
    if isinstance(exc, CircuitOpenError):
        return JobError(ErrorType.TRANSIENT, "CIRCUIT_OPEN", message)
    if isinstance(exc, TimeoutError):
        return JobError(ErrorType.TRANSIENT, AnalysisErrorKind.TIMEOUT.value, message)
    if isinstance(exc, ConnectionError):
        return JobError(
            ErrorType.TRANSIENT, AnalysisErrorKind.CONNECTION.value, message
        )
    return JobError(ErrorType.TRANSIENT, "UNKNOWN_ERROR", message)


def should_retry(error: JobError, attempt_count: int, max_attempts: int) -> bool:
    return error.is_transient and attempt_count < max_attempts


def backoff_delay_ms(
    attempt: int,
    base_delay_seconds: float = 60,
    *,
    rng: Callable[[], float] = random.random,
) -> int:
    """Exponential delay before a retry, in milliseconds.

    ``base * 2**min(attempt, 5)`` seconds plus up to 10% jitter.
    """
    exponent = min(max(attempt, 0), MAX_BACKOFF_EXPONENT)
    delay_ms = base_delay_seconds * (2**exponent) * 1000
    jitter_ms = delay_ms * JITTER_FRACTION * rng()
    return int(delay_ms + jitter_ms)
