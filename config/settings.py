"""
Configuration loader for the FlowBot engine.
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
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    api_version: str = "v17.0"
    base_url: str = "https://graph.facebook.com"
    verify_token: str = ""
    app_secret: str = ""
    rate_per_second: float = 80.0
    burst: int = 100
    request_timeout: float = 15.0

    @property
    def has_credentials(self) -> bool:
        # Unresolved ${VAR} placeholders count as missing
        return all(
            v and not v.startswith("${")
            for v in (self.phone_number_id, self.access_token)
        )


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowbot.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle: int = 1800                    # seconds


@dataclass
class EngineConfig:
    session_timeout_hours: float = 24.0
    max_hops_per_event: int = 50
    http_default_timeout: float = 30.0          # seconds, http nodes
    webhook_timeout: float = 10.0               # seconds, fire-and-forget webhook nodes
    condition_fail_open: bool = True


@dataclass
class Settings:
    app_name: str = "FlowBot"
    debug: bool = False
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


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


def _resolved(value: Any) -> str:
    """Placeholders whose environment variable is unset read as empty."""
    value = "" if value is None else str(value)
    return "" if value.startswith("${") else value


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "whatsapp" in raw:
            wa = raw["whatsapp"] or {}
            defaults = WhatsAppConfig()
            settings.whatsapp = WhatsAppConfig(
                phone_number_id=str(wa.get("phone_number_id", defaults.phone_number_id)),
                access_token=wa.get("access_token", defaults.access_token),
                api_version=wa.get("api_version", defaults.api_version),
                base_url=wa.get("base_url", defaults.base_url),
                verify_token=_resolved(wa.get("verify_token", defaults.verify_token)),
                app_secret=_resolved(wa.get("app_secret", defaults.app_secret)),
                rate_per_second=float(wa.get("rate_per_second", defaults.rate_per_second)),
                burst=int(wa.get("burst", defaults.burst)),
                request_timeout=float(wa.get("request_timeout", defaults.request_timeout)),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                echo=bool(db.get("echo", settings.debug)),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                max_overflow=int(db.get("max_overflow", settings.database.max_overflow)),
                pool_recycle=int(db.get("pool_recycle", settings.database.pool_recycle)),
            )

        if "engine" in raw:
            eng = raw["engine"] or {}
            defaults = EngineConfig()
            settings.engine = EngineConfig(
                session_timeout_hours=float(eng.get("session_timeout_hours", defaults.session_timeout_hours)),
                max_hops_per_event=int(eng.get("max_hops_per_event", defaults.max_hops_per_event)),
                http_default_timeout=float(eng.get("http_default_timeout", defaults.http_default_timeout)),
                webhook_timeout=float(eng.get("webhook_timeout", defaults.webhook_timeout)),
                condition_fail_open=bool(eng.get("condition_fail_open", defaults.condition_fail_open)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
