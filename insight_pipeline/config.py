"""Build a store, an analyzer and a PipelineConfig from a plain dict."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from insight_pipeline.pipeline.config import PipelineConfig
from insight_pipeline.store.base import Store

if TYPE_CHECKING:
    from insight_pipeline.analysis.base import Analyzer


T = TypeVar("T")


class _Registry(Generic[T]):
    """Provider name -> class, with built-ins imported on first use.

    A registered class exposing ``from_config`` is built with it;
    anything else is called with the config as keyword arguments.
    """

    def __init__(self, kind: str, builtins: Callable[[], dict[str, type[T]]]) -> None:
        self._kind = kind
        self._builtins = builtins
        self._classes: dict[str, type[T]] | None = None

    def _loaded(self) -> dict[str, type[T]]:
        if self._classes is None:
            self._classes = self._builtins()
        return self._classes

    def register(self, name: str, cls: type[T]) -> None:
        self._loaded()[name] = cls

    def build(self, provider: str, config: dict[str, Any]) -> T:
        classes = self._loaded()
        try:
            cls = classes[provider]
        except KeyError:
            raise ValueError(
                f"Unknown {self._kind} provider {provider!r}; "
                f"choose one of {sorted(classes)}"
            ) from None
        from_config = getattr(cls, "from_config", None)
        if from_config is not None:
            return from_config(config)
        return cls(**config)


def _builtin_stores() -> dict[str, type[Store]]:
    from insight_pipeline.store.memory import InMemoryStore
    from insight_pipeline.store.postgres import PostgresStore
    from insight_pipeline.store.sql import SqlStore
    from insight_pipeline.store.sqlite import SqliteStore

    return {
        "memory": InMemoryStore,
        "sqlite": SqliteStore,
        "postgres": PostgresStore,
        "sql": SqlStore,
    }


def _builtin_analyzers() -> dict[str, type[Analyzer]]:
    from insight_pipeline.analysis.litellm import LiteLLMAnalyzer

    return {"litellm": LiteLLMAnalyzer}


store_registry: _Registry[Store] = _Registry("store", _builtin_stores)
analyzer_registry: _Registry[Analyzer] = _Registry("analyzer", _builtin_analyzers)


def parse_config(
    config: dict[str, Any],
) -> tuple[Store, Analyzer, PipelineConfig]:
    """Resolve a config dict of the form::

        {
            "store": {"provider": "postgres", "config": {"host": "db", ...}},
            "analyzer": {"provider": "litellm", "model": "groq/...", "api_key": "..."},
            "pipeline": {"batch_size_threshold": 100, "cooldown": 600},
        }

    Missing sections fall back to the in-memory store, the litellm
    analyzer and default pipeline settings.
    """
    store_section = config.get("store", {})
    analyzer_section = dict(config.get("analyzer", {}))

    store = store_registry.build(
        store_section.get("provider", "memory"), store_section.get("config", {})
    )
    analyzer = analyzer_registry.build(
        analyzer_section.pop("provider", "litellm"), analyzer_section
    )
    return store, analyzer, PipelineConfig.from_dict(config.get("pipeline", {}))
