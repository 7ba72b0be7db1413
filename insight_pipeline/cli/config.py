"""CLI settings for insight-pipeline.

Settings live in a TOML file, ``~/.config/insight-pipeline/config.toml``
unless ``INSIGHT_PIPELINE_CONFIG`` points elsewhere.  Environment
variables win over the file.

Example::

    [analyzer]
    model = "groq/llama-3.3-70b-versatile"
    api_key = "gsk_..."

    [store]
    provider = "postgres"

    [database]
    host = "localhost"
    port = 5432

    [pipeline]
    batch_size_threshold = 100
    cooldown = 600
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from insight_pipeline.analysis.models import DEFAULT_MODEL

_CONFIG_ENV = "INSIGHT_PIPELINE_CONFIG"
_CONFIG_HOME = Path("~/.config/insight-pipeline").expanduser()

# attribute -> (TOML table, key, environment variable)
_FIELDS: dict[str, tuple[str, str, str]] = {
    "api_key": ("analyzer", "api_key", "INSIGHT_PIPELINE_API_KEY"),
    "model": ("analyzer", "model", "INSIGHT_PIPELINE_MODEL"),
    "store_provider": ("store", "provider", "INSIGHT_PIPELINE_STORE"),
    "sqlite_path": ("sqlite", "path", "INSIGHT_PIPELINE_SQLITE_PATH"),
    "db_host": ("database", "host", "POSTGRES_HOST"),
    "db_port": ("database", "port", "POSTGRES_PORT"),
    "db_name": ("database", "name", "POSTGRES_DB"),
    "db_user": ("database", "user", "POSTGRES_USER"),
    "db_password": ("database", "password", "POSTGRES_PASSWORD"),
}


def _config_path() -> Path:
    override = os.environ.get(_CONFIG_ENV)
    return Path(override).expanduser() if override else _CONFIG_HOME / "config.toml"


@dataclass
class Config:
    api_key: str = ""
    model: str = DEFAULT_MODEL.value

    # "sqlite" (local file), "postgres" or "memory"
    store_provider: str = "sqlite"
    sqlite_path: str = "./insight_pipeline.db"

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "insight_pipeline"
    db_user: str = "postgres"
    db_password: str = "postgres"

    # [pipeline] table, handed to PipelineConfig.from_dict untouched
    pipeline: dict[str, Any] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def uses_postgres(self) -> bool:
        return self.store_provider == "postgres"

    @property
    def is_persistent(self) -> bool:
        return self.store_provider != "memory"

    def store_config(self) -> dict[str, Any]:
        match self.store_provider:
            case "postgres":
                return {
                    "host": self.db_host,
                    "port": self.db_port,
                    "database": self.db_name,
                    "user": self.db_user,
                    "password": self.db_password,
                }
            case "sqlite":
                return {"path": self.sqlite_path}
            case _:
                return {}

    def to_dict(self) -> dict[str, Any]:
        """Shape accepted by :func:`insight_pipeline.config.parse_config`."""
        return {
            "store": {"provider": self.store_provider, "config": self.store_config()},
            "analyzer": {
                "provider": "litellm",
                "model": self.model,
                "api_key": self.api_key,
            },
            "pipeline": dict(self.pipeline),
        }

    def _assign(self, name: str, raw: Any) -> None:
        setattr(self, name, int(raw) if name == "db_port" else raw)


def load_config() -> Config:
    cfg = Config()

    path = _config_path()
    if path.exists():
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        for name, (table, key, _) in _FIELDS.items():
            section = data.get(table, {})
            if key in section:
                cfg._assign(name, section[key])
        cfg.pipeline = dict(data.get("pipeline", {}))

    for name, (_, _, env) in _FIELDS.items():
        if env in os.environ:
            cfg._assign(name, os.environ[env])

    return cfg


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return str(value)
    return f'"{value}"'


def _sections(cfg: Config) -> dict[str, list[str]]:
    """Tables worth writing for *cfg*, keyed by TOML table name."""
    wanted = {"analyzer", "store"}
    if cfg.store_provider == "sqlite":
        wanted.add("sqlite")
    if cfg.uses_postgres:
        wanted.add("database")

    sections: dict[str, list[str]] = {}
    for name, (table, key, _) in _FIELDS.items():
        if table in wanted:
            value = getattr(cfg, name)
            sections.setdefault(table, []).append(f"{key} = {_toml_value(value)}")
    if cfg.pipeline:
        sections["pipeline"] = [
            f"{key} = {_toml_value(value)}" for key, value in cfg.pipeline.items()
        ]
    return sections


def save_config(cfg: Config) -> Path:
    """Write *cfg* to the config file and return its path."""
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    chunks = [
        "\n".join([f"[{table}]", *lines]) for table, lines in _sections(cfg).items()
    ]
    path.write_text("\n\n".join(chunks) + "\n", encoding="utf-8")
    return path


def config_exists() -> bool:
    return _config_path().exists()


def config_path_display() -> str:
    return str(_config_path())
