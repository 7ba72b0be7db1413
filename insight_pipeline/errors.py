"""Exceptions raised by the batch/job pipeline and its collaborators."""

from __future__ import annotations

import enum
from datetime import datetime


class AnalysisErrorKind(enum.StrEnum):
    """What went wrong when calling the external analysis function."""

    TIMEOUT = "TIMEOUT"
    CONNECTION = "CONNECTION"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER = "SERVER"
    BAD_RESPONSE = "BAD_RESPONSE"
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"


class AnalysisError(Exception):
    """Structured failure raised by an ``Analyzer`` at the call site.

    The ``kind`` tag, not the message text, decides whether the job is
    retried or dead-lettered.
    """

    def __init__(
        self,
        kind: AnalysisErrorKind,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.message = message or f"Analysis failed: {kind.value}"
        super().__init__(self.message)


class CircuitOpenError(Exception):
    """Raised by the circuit breaker instead of calling the wrapped function."""

    def __init__(self, retry_at: datetime | None, message: str | None = None):
        self.retry_at = retry_at
        if message is None:
            if retry_at is not None:
                message = (
                    f"Circuit breaker is OPEN. Cooling down until "
                    f"{retry_at.isoformat()}"
                )
            else:
                message = "Circuit breaker is OPEN"
        self.message = message
        super().__init__(self.message)


# ── Pipeline invariant violations ────────────────────────────────────


class PipelineInvariantError(Exception):
    """Base for batch states under which analysis can never succeed."""

    code = "INVARIANT_VIOLATION"

    def __init__(self, batch_id: str, message: str | None = None):
        self.batch_id = batch_id
        self.message = message or f"Invariant violated for batch {batch_id}"
        super().__init__(self.message)


class BatchNotFoundError(PipelineInvariantError):
    code = "NOT_FOUND"

    def __init__(self, batch_id: str):
        super().__init__(batch_id, f"Batch not found: {batch_id}")


class BatchNotSealedError(PipelineInvariantError):
    code = "BATCH_NOT_SEALED"

    def __init__(self, batch_id: str, status: str):
        self.status = status
        super().__init__(batch_id, f"Batch not sealed (status: {status})")


class EmptyBatchError(PipelineInvariantError):
    code = "NO_EVENTS"

    def __init__(self, batch_id: str):
        super().__init__(batch_id, "No events in batch")


# ── Store / admin errors ─────────────────────────────────────────────


class JobAlreadyExistsError(Exception):
    """Raised when creating a job for a batch that already has an active one."""

    def __init__(self, batch_id: str, existing_job_id: str | None = None):
        self.batch_id = batch_id
        self.existing_job_id = existing_job_id
        self.message = f"Batch {batch_id} already has an active analysis job"
        super().__init__(self.message)


class InvalidBatchStateError(ValueError):
    """Raised by the manual trigger when a batch cannot be analysed."""

    def __init__(self, batch_id: str, status: str):
        self.batch_id = batch_id
        self.status = status
        self.message = (
            f"Batch must be in SEALED or ANALYZED state to trigger analysis. "
            f"Current state: {status}"
        )
        super().__init__(self.message)
