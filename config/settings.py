"""
Configuration loader for the auto-engagement engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class BusinessHoursConfig:
    """Account-wide default window, used by flows without custom hours."""
    start: str = "09:00:00"
    end: str = "18:00:00"
    timezone: str = ""                 # empty → Settings.timezone


@dataclass
class EngineConfig:
    max_wait_minutes: int = 1440        # upper bound for wait steps (24h)
    default_trigger_source: str = "contact_creation"
    include_test_runs_in_analytics: bool = False


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./autoengage.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "engagement-workers"
    consumer_concurrency: int = 5       # max concurrent executions per worker
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff


@dataclass
class Settings:
    app_name: str = "AutoEngage"
    debug: bool = False
    timezone: str = "UTC"               # account timezone (analytics buckets, default hours)
    business_hours: BusinessHoursConfig = field(default_factory=BusinessHoursConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    flows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def business_hours_timezone(self) -> str:
        return self.business_hours.timezone or self.timezone

    def channel_credentials(self, name: str) -> dict[str, Any]:
        ch = self.channels.get(name)
        if ch is None or not ch.enabled:
            return {}
        return ch.credentials


_settings: Optional[Settings] = None

_ENV_VAR = re.compile(r"\$\{(\w+)\}")


def _expand_env(obj: Any) -> Any:
    """${VAR} in any string value becomes the variable's value; unset ones stay literal."""
    if isinstance(obj, str):
        return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _as_time_str(value: Any) -> str:
    """YAML 1.1 reads unquoted 18:00:00 as sexagesimal seconds."""
    if isinstance(value, int):
        return f"{value // 3600:02d}:{value % 3600 // 60:02d}:{value % 60:02d}"
    return str(value)


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML; a missing file yields defaults."""
    global _settings

    path = Path(config_path or os.environ.get(
        "AUTOENGAGE_CONFIG", Path(__file__).parent / "settings.yaml"
    ))
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = _expand_env(yaml.safe_load(f) or {})

    defaults = Settings()
    hours = _section(BusinessHoursConfig, raw.get("business_hours"))
    hours.start = _as_time_str(hours.start)
    hours.end = _as_time_str(hours.end)

    settings = Settings(
        app_name=raw.get("app_name", defaults.app_name),
        debug=raw.get("debug", defaults.debug),
        timezone=raw.get("timezone", defaults.timezone),
        business_hours=hours,
        engine=_section(EngineConfig, raw.get("engine")),
        database=_section(DatabaseConfig, raw.get("database")),
        queue=_section(QueueConfig, raw.get("queue")),
        channels={
            name: _section(ChannelConfig, data)
            for name, data in (raw.get("channels") or {}).items()
        },
        flows=raw.get("flows") or [],
    )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from the default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
