"""Server configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: FORMSTATS_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class BatcherConfig:
    batch_size: int = 10
    processing_interval_seconds: float = 30.0
    shutdown_timeout_seconds: float = 5.0


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory" or "file"
    path: str = "data/forms.json"


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    batcher: BatcherConfig = field(default_factory=BatcherConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "FORMSTATS_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "FORMSTATS_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "FORMSTATS_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "FORMSTATS_BATCHER_BATCH_SIZE": lambda v: setattr(config.batcher, "batch_size", int(v)),
        "FORMSTATS_BATCHER_INTERVAL": lambda v: setattr(config.batcher, "processing_interval_seconds", float(v)),
        "FORMSTATS_BATCHER_SHUTDOWN_TIMEOUT": lambda v: setattr(config.batcher, "shutdown_timeout_seconds", float(v)),
        "FORMSTATS_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "FORMSTATS_STORAGE_PATH": lambda v: setattr(config.storage, "path", v),
        "FORMSTATS_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "FORMSTATS_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("FORMSTATS_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in ("server", "batcher", "storage", "logging"):
            target = getattr(config, section)
            for k, v in (raw.get(section) or {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
