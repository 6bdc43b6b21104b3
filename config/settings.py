"""
Configuration loader for the dispatch core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_OPT_OUT_KEYWORDS = ["stop", "unsubscribe", "opt out", "optout", "cancel", "no messages"]


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./dispatch.db"     # postgresql:// | sqlite://
    store_backend: str = "memory"             # "sql" | "memory"


@dataclass
class DispatchConfig:
    rate_limit_per_minute: int = 120     # system-wide, per tenant
    max_attempts: int = 3
    backoff_base_seconds: int = 30
    stuck_timeout_seconds: int = 300
    batch_size: int = 200
    sweep_interval_seconds: int = 60
    run_sweeper: bool = True              # in-process SweepRunner; cron may also call /cron/dispatch


@dataclass
class AutomationConfig:
    followup_window_hours: int = 24
    context_window_hours: int = 72
    comment_confidence_threshold: float = 0.7
    comment_max_age_days: int = 7
    max_clarifying_questions: int = 2
    opt_out_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_OPT_OUT_KEYWORDS))


@dataclass
class InstagramConfig:
    graph_base_url: str = "https://graph.facebook.com"
    instagram_base_url: str = "https://graph.instagram.com"
    api_version: str = "v21.0"
    timeout_seconds: float = 15.0


@dataclass
class Settings:
    app_name: str = "AutoReplyDispatch"
    debug: bool = False
    cron_secret: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    instagram: InstagramConfig = field(default_factory=InstagramConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.cron_secret = raw.get("cron_secret", settings.cron_secret)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "dispatch" in raw:
            settings.dispatch = _section(DispatchConfig, raw["dispatch"])
        if "automation" in raw:
            settings.automation = _section(AutomationConfig, raw["automation"])
        if "instagram" in raw:
            settings.instagram = _section(InstagramConfig, raw["instagram"])

    # CRON_SECRET in the environment wins over the file
    settings.cron_secret = os.environ.get("CRON_SECRET", settings.cron_secret)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
