"""
Configuration loader for the support orchestrator.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    timeout_seconds: float = 25.0


@dataclass
class VectorSearchConfig:
    base_url: str = ""
    api_key: str = ""
    search_path: str = "/search"
    timeout_seconds: float = 10.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./support_orchestrator.db"   # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20


@dataclass
class OrchestratorConfig:
    lock_window_ms: int = 30_000
    cooldown_interval_ms: int = 5_000
    inactivity_threshold_ms: int = 30 * 60 * 1000
    reminder_fraction: float = 0.5
    match_confidence_floor: float = 0.7
    switch_threshold: float = 0.6
    document_relevance_threshold: float = 0.7
    document_top_k: int = 5
    history_limit: int = 20
    non_interruptible_kinds: list[str] = field(
        default_factory=lambda: ["intake", "onboarding"]
    )

    @property
    def llm_timeout_cap_seconds(self) -> float:
        """Upper bound for a single AI call: the lock TTL minus a safety margin."""
        window = self.lock_window_ms / 1000
        return max(1.0, window - min(5.0, window / 3))


@dataclass
class WorkerConfig:
    poll_interval_seconds: float = 1.0
    inactivity_interval_seconds: float = 300.0
    max_concurrency: int = 5
    batch_size: int = 50


@dataclass
class Settings:
    app_name: str = "SupportOrchestrator"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    vector_search: VectorSearchConfig = field(default_factory=VectorSearchConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    @property
    def llm_timeout_seconds(self) -> float:
        return min(self.llm.timeout_seconds, self.orchestrator.llm_timeout_cap_seconds)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} / ${VAR_NAME:default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if var_name in os.environ:
            return os.environ[var_name]
        return default if default is not None else match.group(0)
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], defaults):
    """Build a config dataclass from a raw mapping, ignoring unknown keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    merged = {name: getattr(defaults, name) for name in cls.__dataclass_fields__}
    merged.update(known)
    return cls(**merged)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ORCHESTRATOR_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"] or {}, settings.llm)
            settings.llm.timeout_seconds = float(settings.llm.timeout_seconds)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"] or {}, settings.database)

        if "vector_search" in raw:
            settings.vector_search = _section(
                VectorSearchConfig, raw["vector_search"] or {}, settings.vector_search,
            )

        if "orchestrator" in raw:
            settings.orchestrator = _section(
                OrchestratorConfig, raw["orchestrator"] or {}, settings.orchestrator,
            )

        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"] or {}, settings.worker)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (testing)."""
    global _settings
    _settings = None
