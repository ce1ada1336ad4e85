"""
Configuration loader for the long-poll bridge.
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
class BrokerConfig:
    host: str = "0.0.0.0"
    port: int = 7080
    long_poll_timeout: float = 25.0                    # seconds a waiter stays suspended
    max_upload_bytes: int = 20 * 1024 * 1024
    attachment_url_prefix: str = "/v1/attachments"


@dataclass
class ConsumerConfig:
    broker_url: str = "http://127.0.0.1:7080"
    auth_token: str = ""                               # passed through as Bearer, never validated
    extra_headers: dict[str, str] = field(default_factory=dict)
    client_timeout_margin: float = 10.0                # added to the server long-poll timeout
    backoff_floor: float = 1.0
    backoff_max: float = 15.0
    idle_multiplier: float = 1.2
    error_multiplier: float = 2.0
    ack_timeout: float = 30.0
    ack_attempts: int = 3
    seen_ids_max: int = 10000
    seen_ids_retention: int = 1000                     # ids this far below the cursor may be evicted
    ack_cache_max: int = 10000
    settle_delay: float = 0.12                         # pause between two processed questions
    processor: str = "echo"


@dataclass
class Settings:
    app_name: str = "LongPollBridge"
    debug: bool = False
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)


_settings: Optional[Settings] = None
_UNRESOLVED = re.compile(r'\$\{\w+\}')


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


def _build(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from a dict, ignoring unknown keys."""
    defaults = cls()
    values = {}
    for name in cls.__dataclass_fields__:
        value = raw.get(name)
        # unresolved ${VAR} placeholders fall back to the default
        if value is None or (isinstance(value, str) and _UNRESOLVED.fullmatch(value)):
            value = getattr(defaults, name)
        values[name] = value
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LONGPOLL_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "broker" in raw:
            settings.broker = _build(BrokerConfig, raw["broker"] or {})
            settings.broker.port = int(settings.broker.port)
            settings.broker.long_poll_timeout = float(settings.broker.long_poll_timeout)

        if "consumer" in raw:
            settings.consumer = _build(ConsumerConfig, raw["consumer"] or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
