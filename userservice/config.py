"""Configuration management for the user service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigurationError

CONFIG_PATH_ENV = "USERSERVICE_CONFIG"

# Setting name -> environment variable. DATABASE_URL keeps the conventional
# unprefixed name so container platforms can inject it directly.
_ENV_VARS: Dict[str, str] = {
    "database_url": "DATABASE_URL",
    "host": "USERSERVICE_HOST",
    "port": "USERSERVICE_PORT",
    "pool_size": "USERSERVICE_POOL_SIZE",
    "max_overflow": "USERSERVICE_MAX_OVERFLOW",
    "probe_timeout": "USERSERVICE_PROBE_TIMEOUT",
    "request_timeout": "USERSERVICE_REQUEST_TIMEOUT",
    "shutdown_grace_period": "USERSERVICE_SHUTDOWN_GRACE",
    "log_level": "USERSERVICE_LOG_LEVEL",
}

_LOG_LEVELS = {"critical", "error", "warning", "info", "debug"}


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime settings for the HTTP listener and the connection pool."""

    database_url: str
    host: str = "0.0.0.0"
    port: int = 8080
    pool_size: int = 5
    max_overflow: int = 10
    probe_timeout: float = 1.0
    request_timeout: float = 10.0
    shutdown_grace_period: float = 5.0
    log_level: str = "info"

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ServiceConfig":
        """Create a :class:`ServiceConfig` from raw (string or typed) values."""

        unknown = set(data) - set(_ENV_VARS)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        database_url = str(data.get("database_url") or "").strip()
        if not database_url:
            raise ConfigurationError("DATABASE_URL is required")

        log_level = str(data.get("log_level", "info")).strip().lower()
        if log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"Unsupported log level '{log_level}'")

        config = ServiceConfig(
            database_url=database_url,
            host=str(data.get("host", "0.0.0.0")).strip() or "0.0.0.0",
            port=_coerce(data, "port", int, 8080),
            pool_size=_coerce(data, "pool_size", int, 5),
            max_overflow=_coerce(data, "max_overflow", int, 10),
            probe_timeout=_coerce(data, "probe_timeout", float, 1.0),
            request_timeout=_coerce(data, "request_timeout", float, 10.0),
            shutdown_grace_period=_coerce(data, "shutdown_grace_period", float, 5.0),
            log_level=log_level,
        )

        if not 0 <= config.port <= 65535:
            raise ConfigurationError(f"Port {config.port} is out of range")
        if config.pool_size < 1:
            raise ConfigurationError("pool_size must be at least 1")
        if config.max_overflow < 0:
            raise ConfigurationError("max_overflow must not be negative")
        for name in ("probe_timeout", "request_timeout", "shutdown_grace_period"):
            if getattr(config, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        return config

    def with_overrides(self, **overrides: Any) -> "ServiceConfig":
        """Return a copy with the non-``None`` overrides applied."""

        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return replace(self, **values)


def _coerce(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    raw = data.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        return kind(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {key}: {raw!r}") from exc


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the optional YAML configuration file path."""
    if not env_value:
        return None
    return Path(env_value).expanduser().resolve(strict=False)


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_path} is not valid YAML") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration file must contain a mapping of settings")
    return {str(key).lower(): value for key, value in raw.items()}


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    *,
    config_path: Optional[Path] = None,
) -> ServiceConfig:
    """Load settings from the optional YAML file, then the environment."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get(CONFIG_PATH_ENV))

    values: Dict[str, Any] = _load_yaml(path) if path is not None else {}
    for key, variable in _ENV_VARS.items():
        raw = env.get(variable)
        if raw is not None and raw.strip():
            values[key] = raw

    return ServiceConfig.from_dict(values)


__all__ = ["CONFIG_PATH_ENV", "ServiceConfig", "load_config", "resolve_config_path"]
