from __future__ import annotations

import json
import logging
from typing import Any

import litellm
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from insight_pipeline.analysis.base import AnalysisResult, Analyzer
from insight_pipeline.analysis.models import DEFAULT_MODEL
from insight_pipeline.analysis.prompt import (
    build_analysis_messages,
    build_response_format,
)
from insight_pipeline.errors import AnalysisError, AnalysisErrorKind
from insight_pipeline.models import Event

logger = logging.getLogger(__name__)

# Ordered: the first matching class wins.
_ERROR_KINDS: list[tuple[type[Exception], AnalysisErrorKind]] = [
    (Timeout, AnalysisErrorKind.TIMEOUT),
    (RateLimitError, AnalysisErrorKind.RATE_LIMITED),
    (AuthenticationError, AnalysisErrorKind.AUTH),
    (PermissionDeniedError, AnalysisErrorKind.AUTH),
    (NotFoundError, AnalysisErrorKind.NOT_FOUND),
    (BadRequestError, AnalysisErrorKind.VALIDATION),
    (APIConnectionError, AnalysisErrorKind.CONNECTION),
    (ServiceUnavailableError, AnalysisErrorKind.SERVER),
    (InternalServerError, AnalysisErrorKind.SERVER),
    (litellm.APIError, AnalysisErrorKind.SERVER),
]

_LITELLM_ERRORS = tuple(exc_type for exc_type, _ in _ERROR_KINDS)


def to_analysis_error(exc: Exception) -> AnalysisError:
    """Map a litellm exception onto the pipeline's error kinds."""
    status_code = getattr(exc, "status_code", None)
    for exc_type, kind in _ERROR_KINDS:
        if isinstance(exc, exc_type):
            return AnalysisError(kind, str(exc), status_code=status_code)
    return AnalysisError(AnalysisErrorKind.SERVER, str(exc), status_code=status_code)


class LiteLLMAnalyzer(Analyzer):
    """Analyzer that asks an LLM (via litellm) to summarise a batch."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL.value,
        api_key: str | None = None,
        *,
        temperature: float = 0.7,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._temperature = temperature

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> LiteLLMAnalyzer:
        return cls(
            model=str(config.get("model", DEFAULT_MODEL.value)),
            api_key=config.get("api_key") or None,
            temperature=float(config.get("temperature", 0.7)),
        )

    async def analyze(self, events: list[Event]) -> AnalysisResult:
        try:
            text = await self._complete(build_analysis_messages(events))
        except _LITELLM_ERRORS as exc:
            raise to_analysis_error(exc) from exc

        try:
            return AnalysisResult.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Unparseable analysis response: %.200s", text)
            raise AnalysisError(
                AnalysisErrorKind.BAD_RESPONSE,
                f"Invalid analysis response: {exc}",
            ) from exc

    @retry(
        retry=retry_if_exception_type(APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=5, jitter=1),
        reraise=True,
    )
    async def _complete(self, messages: list[dict[str, str]]) -> str:
        response = await litellm.acompletion(
            model=self._model,
            messages=messages,
            api_key=self._api_key,
            temperature=self._temperature,
            response_format=build_response_format(),
        )
        text: str | None = response.choices[0].message.content  # type: ignore[union-attr]
        if not text:
            raise AnalysisError(AnalysisErrorKind.BAD_RESPONSE, "Empty response from model")
        return text.strip()
