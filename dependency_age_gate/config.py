"""
Configuration loading for the age gate.

The YAML file is read once per run and turned into an immutable
``AgeGateConfig`` snapshot that is passed explicitly to the engine.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .models import ExceptionEntry, SourceDescriptor
from .time_utils import coerce_datetime


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".bundler-age-gate.yml"
DEFAULT_MINIMUM_AGE_DAYS = 7
DEFAULT_MAX_WORKERS = 8
MIN_WORKERS = 1
MAX_WORKERS = 16
DEFAULT_AUDIT_LOG_PATH = ".bundler-age-gate.log"

DEFAULT_SOURCE_NAME = "rubygems"
DEFAULT_SOURCE_URL = "https://rubygems.org"
DEFAULT_API_ENDPOINT = "https://rubygems.org/api/v1/versions/%s.json"

_ENV_PLACEHOLDER = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


class ConfigError(ValueError):
    """Raised when the configuration file cannot be interpreted."""


@dataclass(frozen=True)
class AgeGateConfig:
    """Immutable policy snapshot for a single run."""

    minimum_age_days: int = DEFAULT_MINIMUM_AGE_DAYS
    sources: Tuple[SourceDescriptor, ...] = field(default_factory=tuple)
    max_workers: int = DEFAULT_MAX_WORKERS
    audit_log_path: str = DEFAULT_AUDIT_LOG_PATH
    exceptions: Tuple[ExceptionEntry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.sources:
            object.__setattr__(self, "sources", (default_source(self.minimum_age_days),))


def default_source(minimum_age_days: int = DEFAULT_MINIMUM_AGE_DAYS) -> SourceDescriptor:
    return SourceDescriptor(
        name=DEFAULT_SOURCE_NAME,
        url=DEFAULT_SOURCE_URL,
        api_endpoint=DEFAULT_API_ENDPOINT,
        minimum_age_days=minimum_age_days,
    )


def default_config() -> AgeGateConfig:
    return AgeGateConfig()


def load_config(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> AgeGateConfig:
    """Load the YAML configuration, falling back to defaults on any problem."""
    path = Path(config_path)
    if not path.exists():
        logger.debug("No config at %s, using defaults", path)
        return default_config()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return parse_config(data or {}, environ=environ)
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ConfigError) as e:
        logger.warning("Failed to load config from %s: %s", path, e)
        logger.warning("Using default configuration")
        return default_config()


def read_raw_config(config_path: Path | str) -> Dict[str, Any]:
    """Return the untouched YAML mapping, used when rewriting the file."""
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {config_path}")
    return data


def write_raw_config(config_path: Path | str, data: Dict[str, Any]) -> None:
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def parse_config(data: Any, environ: Optional[Mapping[str, str]] = None) -> AgeGateConfig:
    """Build a config snapshot from an already-parsed YAML document."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")
    if environ is None:
        environ = os.environ

    minimum_age_days = _parse_days(
        data.get("minimum_age_days", DEFAULT_MINIMUM_AGE_DAYS), "minimum_age_days"
    )
    sources = tuple(
        _parse_source(entry, minimum_age_days, environ)
        for entry in _as_list(data.get("sources"), "sources")
    )
    exceptions = tuple(
        entry
        for entry in (_parse_exception(raw) for raw in _as_list(data.get("exceptions"), "exceptions"))
        if entry is not None
    )
    audit_log_path = data.get("audit_log_path") or DEFAULT_AUDIT_LOG_PATH

    return AgeGateConfig(
        minimum_age_days=minimum_age_days,
        sources=sources,
        max_workers=clamp_max_workers(data.get("max_workers", DEFAULT_MAX_WORKERS)),
        audit_log_path=str(audit_log_path),
        exceptions=exceptions,
    )


def clamp_max_workers(value: Any) -> int:
    """Coerce ``max_workers`` into the supported range, warning on corrections."""
    if isinstance(value, bool):
        value = None
    try:
        workers = int(value)
    except (TypeError, ValueError):
        logger.warning(
            "max_workers must be an integer, got %r; using %d", value, DEFAULT_MAX_WORKERS
        )
        return DEFAULT_MAX_WORKERS

    if workers < MIN_WORKERS:
        logger.warning("max_workers %d is below %d; using %d", workers, MIN_WORKERS, MIN_WORKERS)
        return MIN_WORKERS
    if workers > MAX_WORKERS:
        logger.warning("max_workers %d is above %d; using %d", workers, MAX_WORKERS, MAX_WORKERS)
        return MAX_WORKERS
    return workers


def substitute_env(value: Optional[str], environ: Mapping[str, str]) -> Optional[str]:
    """Resolve a whole-token ``${NAME}`` placeholder from the environment.

    Only a value consisting of exactly one placeholder is substituted, and the
    substituted value is not expanded again.
    """
    if value is None:
        return None
    match = _ENV_PLACEHOLDER.match(value)
    if not match:
        return value
    name = match.group(1)
    resolved = environ.get(name)
    if resolved is None:
        logger.warning("Environment variable %s is not set; auth token disabled", name)
    return resolved


def _as_list(value: Any, key: str) -> List:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list")
    return value


def _parse_days(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer")
    try:
        days = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from e
    if days < 0:
        raise ConfigError(f"'{key}' must not be negative")
    return days


def _parse_source(
    entry: Any, default_minimum_age: int, environ: Mapping[str, str]
) -> SourceDescriptor:
    if not isinstance(entry, dict):
        raise ConfigError("Each source must be a mapping")
    missing = [key for key in ("name", "url", "api_endpoint") if not entry.get(key)]
    if missing:
        raise ConfigError(f"Source is missing {', '.join(missing)}")

    minimum_age = entry.get("minimum_age_days")
    auth_token = entry.get("auth_token")
    return SourceDescriptor(
        name=str(entry["name"]),
        url=str(entry["url"]),
        api_endpoint=str(entry["api_endpoint"]),
        minimum_age_days=(
            default_minimum_age
            if minimum_age is None
            else _parse_days(minimum_age, f"sources.{entry['name']}.minimum_age_days")
        ),
        auth_token=substitute_env(None if auth_token is None else str(auth_token), environ),
    )


def _parse_exception(entry: Any) -> Optional[ExceptionEntry]:
    if not isinstance(entry, dict) or not entry.get("gem"):
        logger.warning("Ignoring exception entry without a gem name: %r", entry)
        return None

    version = entry.get("version")
    expires = entry.get("expires")
    expires_at = coerce_datetime(expires)
    if expires is not None and expires_at is None:
        logger.warning("Unparseable expiry %r for exception %s; treating as non-expiring",
                       expires, entry["gem"])

    return ExceptionEntry(
        gem=str(entry["gem"]),
        version=None if version is None else str(version),
        reason=str(entry.get("reason") or ""),
        approved_by=None if entry.get("approved_by") is None else str(entry["approved_by"]),
        expires=expires_at,
        raw=dict(entry),
    )
