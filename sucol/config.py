"""Configuration management for the Sucol water billing console."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .billing import DEFAULT_TARIFF, Tariff

DEFAULT_API_BASE_URL = "http://localhost:5000"
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_API_TIMEOUT = 10.0


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _positive_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return number


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the web console and CLI."""

    api_base_url: str = DEFAULT_API_BASE_URL
    session_secret: Optional[str] = None
    session_secure: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    api_timeout: float = DEFAULT_API_TIMEOUT
    tariff: Tariff = field(default=DEFAULT_TARIFF)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Settings":
        """Create :class:`Settings` from raw (YAML) dictionary data."""

        tariff_raw = data.get("tariff") or {}
        if not isinstance(tariff_raw, Mapping):
            raise ValueError("The 'tariff' configuration must be a mapping")

        base_url = str(data.get("api_base_url") or DEFAULT_API_BASE_URL).strip().rstrip("/")
        secret = data.get("session_secret")
        secure = data.get("session_secure", False)
        if isinstance(secure, str):
            secure = _env_flag(secure)
        return Settings(
            api_base_url=base_url,
            session_secret=str(secret) if secret else None,
            session_secure=bool(secure),
            poll_interval=_positive_float(
                data.get("poll_interval", DEFAULT_POLL_INTERVAL), "poll_interval"
            ),
            api_timeout=_positive_float(data.get("api_timeout", DEFAULT_API_TIMEOUT), "api_timeout"),
            tariff=Tariff.from_dict(dict(tariff_raw)),
        )


def load_config_file(config_path: Path) -> Dict[str, Any]:
    """Load raw settings from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return raw


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the path to the optional configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (Path(__file__).resolve().parent.parent / "config" / "sucol.yaml").resolve(strict=False)
    return candidate if candidate.exists() else None


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the optional YAML file, overridden by ``SUCOL_*`` variables."""

    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    config_path = resolve_config_path(env.get("SUCOL_CONFIG_PATH"))
    if config_path is not None:
        raw.update(load_config_file(config_path))

    overrides = {
        "api_base_url": env.get("SUCOL_API_BASE_URL"),
        "session_secret": env.get("SUCOL_SESSION_SECRET"),
        "poll_interval": env.get("SUCOL_POLL_INTERVAL"),
        "api_timeout": env.get("SUCOL_API_TIMEOUT"),
    }
    raw.update({key: value for key, value in overrides.items() if value})

    secure = env.get("SUCOL_SESSION_SECURE")
    if secure is not None:
        raw["session_secure"] = _env_flag(secure)

    return Settings.from_dict(raw)


__all__ = ["Settings", "load_config_file", "load_settings", "resolve_config_path"]
