from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

QUEUE_NAME = "translation_requests"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "BROKER_URL": "broker.url",
    "RECONNECT_INTERVAL": "broker.reconnect_interval",
    "WORKER_NAME": "broker.consumer_name",
    "STORE_URL": "store.url",
    "HOST": "api.host",
    "PORT": "api.port",
    "TRANSLATOR_BACKEND": "translator.backend",
    "LOG_LEVEL": "logging.level",
}

SQLITE_PREFIX = "sqlite:///"


@dataclass
class BrokerSettings:
    url: str = "redis://localhost:6379/0"
    queue_name: str = QUEUE_NAME
    reconnect_interval: float = 5.0
    poll_timeout: float = 1.0
    consumer_name: str = "worker-1"


@dataclass
class StoreSettings:
    url: str = "sqlite:///data/translations.db"


@dataclass
class ApiSettings:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class TranslatorSettings:
    backend: str = "reverse"


@dataclass
class LoggingSettings:
    level: str = "INFO"


@dataclass
class Settings:
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    translator: TranslatorSettings = field(default_factory=TranslatorSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _env_overrides(environ: Mapping[str, str]) -> DictConfig:
    overrides = OmegaConf.create({})
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            OmegaConf.update(overrides, key, value)
    return overrides


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """
    Build runtime settings from packaged defaults, the environment and explicit overrides.

    Later sources win: config.yaml < environment < overrides. The structured
    schema converts numeric strings from the environment and rejects unknown keys.

    Args:
        environ: Environment mapping (default: os.environ after loading .env)
        overrides: Nested dictionary of explicit values, mainly for tests

    Returns:
        Settings instance
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base = OmegaConf.structured(Settings)
    merged = OmegaConf.merge(
        base,
        OmegaConf.load(CONFIG_PATH),
        _env_overrides(environ),
        OmegaConf.create(overrides or {}),
    )
    settings: Settings = OmegaConf.to_object(merged)  # type: ignore[assignment]
    # The queue is part of the wire protocol between API and worker.
    settings.broker.queue_name = QUEUE_NAME
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def sqlite_path(store_url: str) -> Path:
    """Translate a ``sqlite:///relative/or/absolute`` URL (or a bare path) into a filesystem path."""
    if store_url.startswith(SQLITE_PREFIX):
        return Path(store_url[len(SQLITE_PREFIX):])
    if "://" in store_url:
        raise ValueError(f"Unsupported store URL: {store_url}")
    return Path(store_url)
