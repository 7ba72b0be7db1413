from __future__ import annotations

import pytest

from insight_pipeline.config import analyzer_registry, parse_config, store_registry
from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.store.memory import InMemoryStore
from insight_pipeline.store.sqlite import SqliteStore


def test_defaults() -> None:
    config = PipelineConfig()
    assert config.batch_size_threshold == 100
    assert config.batch_time_window == 600
    assert config.max_attempts == 5
    assert config.job_lock_timeout == 600
    assert config.stuck_job_timeout == 900
    assert config.failure_threshold == 5
    assert config.cooldown == 600
    assert config.half_open_max_requests == 1
    assert config.archive_after_days == 30


def test_from_dict_coerces_and_ignores_unknown() -> None:
    config = PipelineConfig.from_dict(
        {"batch_size_threshold": "50", "cooldown": 30, "colour": "blue"}
    )
    assert config.batch_size_threshold == 50
    assert isinstance(config.batch_size_threshold, int)
    assert config.cooldown == 30.0


@pytest.mark.parametrize(
    "field", ["batch_size_threshold", "max_attempts", "failure_threshold"]
)
def test_rejects_non_positive(field: str) -> None:
    with pytest.raises(ValueError, match=field):
        PipelineConfig(**{field: 0})


def test_parse_config_defaults_to_memory() -> None:
    store, analyzer, pipeline_config = parse_config({})
    assert isinstance(store, InMemoryStore)
    assert type(analyzer).__name__ == "LiteLLMAnalyzer"
    assert pipeline_config == PipelineConfig()


def test_parse_config_sqlite(tmp_path) -> None:  # noqa: ANN001
    store, analyzer, pipeline_config = parse_config(
        {
            "store": {
                "provider": "sqlite",
                "config": {"path": str(tmp_path / "x.db")},
            },
            "analyzer": {"provider": "litellm", "model": "openai/gpt-4o"},
            "pipeline": {"max_attempts": 3},
        }
    )
    assert isinstance(store, SqliteStore)
    assert analyzer._model == "openai/gpt-4o"  # type: ignore[attr-defined]
    assert pipeline_config.max_attempts == 3


def test_unknown_provider() -> None:
    with pytest.raises(ValueError, match="Unknown store provider 'mongo'"):
        store_registry.build("mongo", {})
    with pytest.raises(ValueError, match="Unknown analyzer provider"):
        analyzer_registry.build("nope", {})
