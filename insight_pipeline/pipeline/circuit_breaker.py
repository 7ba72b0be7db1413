"""Circuit breaker around the external analysis call.

CLOSED ──(failure_threshold consecutive failures)──▶ OPEN
OPEN ──(cooldown elapsed)──▶ HALF_OPEN
HALF_OPEN ──(trial success)──▶ CLOSED
HALF_OPEN ──(trial failure)──▶ OPEN (cooldown restarts)

The OPEN → HALF_OPEN move is evaluated against the injected clock every
time the breaker is consulted rather than by a timer.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from pydantic import BaseModel

from insight_pipeline.errors import CircuitOpenError
from insight_pipeline.pipeline.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(enum.StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerMetrics(BaseModel):
    state: CircuitState
    failure_count: int
    success_count: int
    last_state_change: datetime
    last_failure_time: datetime | None
    retry_at: datetime | None


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 600,
        half_open_max_requests: int = 1,
        clock: Clock | None = None,
        name: str = "analysis",
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._half_open_max = half_open_max_requests
        self._clock = clock or SystemClock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_state_change = self._clock.now()
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._trials_in_flight = 0
        # Bumped on every state change; trials from an older generation are stale.
        self._generation = 0

    @property
    def state(self) -> CircuitState:
        self._refresh()
        return self._state

    @property
    def retry_at(self) -> datetime | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        return self._opened_at + self._cooldown

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` unless the breaker rejects it with ``CircuitOpenError``."""
        self._refresh()

        if self._state == CircuitState.OPEN:
            raise CircuitOpenError(self.retry_at)

        trial = self._state == CircuitState.HALF_OPEN
        if trial:
            if self._trials_in_flight >= self._half_open_max:
                raise CircuitOpenError(
                    None, "Circuit breaker is HALF_OPEN and its trial slots are taken"
                )
            self._trials_in_flight += 1
        generation = self._generation

        try:
            result = await fn()
        except Exception:
            self._on_failure(trial and generation == self._generation)
            raise
        else:
            self._on_success(trial and generation == self._generation)
            return result
        finally:
            if trial and generation == self._generation:
                self._trials_in_flight -= 1

    def get_metrics(self) -> CircuitBreakerMetrics:
        self._refresh()
        return CircuitBreakerMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_state_change=self._last_state_change,
            last_failure_time=self._last_failure_time,
            retry_at=self.retry_at,
        )

    def reset(self) -> None:
        """Force CLOSED and clear counters."""
        self._transition(CircuitState.CLOSED, reason="manual reset")
        self._failure_count = 0
        self._success_count = 0

    # ── internals ────────────────────────────────────────────────────

    def _refresh(self) -> None:
        if self._state != CircuitState.OPEN:
            return
        retry_at = self.retry_at
        if retry_at is not None and self._clock.now() >= retry_at:
            self._transition(CircuitState.HALF_OPEN, reason="cooldown elapsed")

    def _on_success(self, trial: bool) -> None:
        if trial and self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED, reason="trial call succeeded")
            self._failure_count = 0
            self._success_count = 0
            return
        self._success_count += 1
        if self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def _on_failure(self, trial: bool) -> None:
        self._last_failure_time = self._clock.now()
        if trial and self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, reason="trial call failed")
            return
        if self._state != CircuitState.CLOSED:
            return
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._transition(
                CircuitState.OPEN,
                reason=f"{self._failure_count} consecutive failures",
            )

    def _transition(self, new_state: CircuitState, *, reason: str) -> None:
        old_state = self._state
        now = self._clock.now()
        self._state = new_state
        self._last_state_change = now
        self._generation += 1
        self._trials_in_flight = 0
        self._opened_at = now if new_state == CircuitState.OPEN else None

        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker %s: %s -> OPEN (%s), retry at %s",
                self.name,
                old_state,
                reason,
                self.retry_at.isoformat() if self.retry_at else "-",
            )
        else:
            logger.info(
                "Circuit breaker %s: %s -> %s (%s)",
                self.name,
                old_state,
                new_state,
                reason,
            )
