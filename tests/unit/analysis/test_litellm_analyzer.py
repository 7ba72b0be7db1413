from __future__ import annotations

import json
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from insight_pipeline.analysis.litellm import LiteLLMAnalyzer, to_analysis_error
from insight_pipeline.analysis.prompt import build_analysis_messages
from insight_pipeline.errors import AnalysisError, AnalysisErrorKind
from insight_pipeline.models import Event

T0 = datetime(2026, 1, 1, 12, tzinfo=UTC)

_EXC_KWARGS = {"message": "upstream said no", "llm_provider": "groq", "model": "m"}


def _events() -> list[Event]:
    return [
        Event(event_type="page_view", user_id="u1", timestamp=T0, metadata={"p": "/"}),
        Event(event_type="add_to_cart", user_id="u1", timestamp=T0),
    ]


def _response(content: str | None) -> Any:
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture()
def calls() -> list[dict[str, Any]]:
    """Captured ``acompletion`` kwargs; the reply is set per test."""
    return []


def _reply_with(
    monkeypatch: pytest.MonkeyPatch,
    recorded: list[dict[str, Any]],
    outcome: Any,
) -> None:
    async def fake_acompletion(**kwargs: Any) -> Any:
        recorded.append(kwargs)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)


async def test_parses_structured_response(
    monkeypatch: pytest.MonkeyPatch, calls: list[dict[str, Any]]
) -> None:
    payload = {
        "summary": "Users browse then buy",
        "confidence": 0.8,
        "patterns": ["funnel"],
    }
    _reply_with(monkeypatch, calls, _response(json.dumps(payload)))

    analyzer = LiteLLMAnalyzer(model="groq/test-model", api_key="k")
    result = await analyzer.analyze(_events())

    assert result.summary == "Users browse then buy"
    assert result.confidence == 0.8
    assert result.patterns == ["funnel"]
    [call] = calls
    assert call["model"] == "groq/test-model"
    assert call["api_key"] == "k"
    assert call["response_format"]["type"] == "json_schema"


@pytest.mark.parametrize(
    "content",
    ["not json", '{"summary": "x"}', '{"summary": "x", "confidence": 7}'],
)
async def test_bad_response_is_reported(
    monkeypatch: pytest.MonkeyPatch, calls: list[dict[str, Any]], content: str
) -> None:
    _reply_with(monkeypatch, calls, _response(content))
    with pytest.raises(AnalysisError) as info:
        await LiteLLMAnalyzer().analyze(_events())
    assert info.value.kind == AnalysisErrorKind.BAD_RESPONSE


async def test_empty_response_is_reported(
    monkeypatch: pytest.MonkeyPatch, calls: list[dict[str, Any]]
) -> None:
    _reply_with(monkeypatch, calls, _response(None))
    with pytest.raises(AnalysisError) as info:
        await LiteLLMAnalyzer().analyze(_events())
    assert info.value.kind == AnalysisErrorKind.BAD_RESPONSE


async def test_provider_errors_are_mapped(
    monkeypatch: pytest.MonkeyPatch, calls: list[dict[str, Any]]
) -> None:
    _reply_with(monkeypatch, calls, RateLimitError(**_EXC_KWARGS))
    with pytest.raises(AnalysisError) as info:
        await LiteLLMAnalyzer().analyze(_events())
    assert info.value.kind == AnalysisErrorKind.RATE_LIMITED
    assert len(calls) == 1


@pytest.mark.parametrize(
    ("exc_type", "kind"),
    [
        (Timeout, AnalysisErrorKind.TIMEOUT),
        (RateLimitError, AnalysisErrorKind.RATE_LIMITED),
        (AuthenticationError, AnalysisErrorKind.AUTH),
        (NotFoundError, AnalysisErrorKind.NOT_FOUND),
        (BadRequestError, AnalysisErrorKind.VALIDATION),
        (APIConnectionError, AnalysisErrorKind.CONNECTION),
        (ServiceUnavailableError, AnalysisErrorKind.SERVER),
    ],
)
def test_to_analysis_error(exc_type: type[Exception], kind: AnalysisErrorKind) -> None:
    error = to_analysis_error(exc_type(**_EXC_KWARGS))
    assert error.kind == kind


def test_from_config() -> None:
    analyzer = LiteLLMAnalyzer.from_config(
        {"model": "openai/gpt-4o-mini", "api_key": "", "temperature": "0.2"}
    )
    assert analyzer._model == "openai/gpt-4o-mini"
    assert analyzer._api_key is None
    assert analyzer._temperature == 0.2


def test_prompt_lists_every_event() -> None:
    messages = build_analysis_messages(_events())
    assert messages[0]["role"] == "system"
    user = messages[-1]["content"]
    assert "page_view" in user
    assert "add_to_cart" in user
