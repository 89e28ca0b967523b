"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./storesync.yaml (working directory)
3. ~/.storesync/config.yaml (user home)

Environment variables override YAML: STORESYNC_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found, defaults plus env overrides are used.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from src.db.models import SyncDirection

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_PREFIX = "STORESYNC_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """State database location. DATABASE_URL still wins when set."""

    url: str | None = None
    echo: bool = False


class RemoteConfig(BaseModel):
    """Remote store REST API credentials and transport limits."""

    site_url: str = ""
    consumer_key: str = ""
    consumer_secret: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0

    @field_validator("site_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Normalize site URL (remove trailing slash)."""
        return value.rstrip("/")


class SyncConfig(BaseModel):
    """Defaults for full sync runs."""

    batch_size: int = Field(default=100, ge=1, le=100)
    default_direction: SyncDirection = SyncDirection.both
    scope: str = "default"


class WebhookConfig(BaseModel):
    """Webhook intake and drain-loop settings."""

    secret: str | None = None
    rate_limit: int = 100
    rate_window_seconds: float = 60.0
    allowed_ips: list[str] = []
    max_attempts: int = 3
    max_replays: int = 5
    poll_interval: float = 1.0


class BatchConfig(BaseModel):
    """Batch scheduler settings."""

    batch_size: int = 50
    processing_interval: float = 5.0
    max_retries: int = 3
    retry_delay: float = 30.0
    job_retention_days: int = 7
    retention_days: int = 30


class RecoveryConfig(BaseModel):
    """Error recovery and circuit breaker settings."""

    max_retry_attempts: int = 3
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    rate_limit_delay_factor: float = 10.0
    breaker_threshold: int = 5
    breaker_timeout: float = 300.0
    enable_auto_recovery: bool = True


class MonitoringConfig(BaseModel):
    """Alert thresholds."""

    failure_rate: float = 0.1
    avg_response_time_ms: float = 5000.0
    conflict_rate: float = 0.05
    webhook_delay_seconds: float = 300.0
    sync_delay_seconds: float = 3600.0
    check_interval: float = 60.0


class LoggingConfig(BaseModel):
    """Log level and optional log file."""

    level: str = "info"
    file: str | None = None


class StoreSyncConfig(BaseModel):
    """Top-level configuration for StoreSync."""

    database: DatabaseConfig = DatabaseConfig()
    remote: RemoteConfig = RemoteConfig()
    sync: SyncConfig = SyncConfig()
    webhook: WebhookConfig = WebhookConfig()
    batch: BatchConfig = BatchConfig()
    recovery: RecoveryConfig = RecoveryConfig()
    monitoring: MonitoringConfig = MonitoringConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "storesync.yaml",
        Path.cwd() / "storesync.yml",
        Path.home() / ".storesync" / "config.yaml",
        Path.home() / ".storesync" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce_env_value(value: str) -> Any:
    """Coerce an env override to int, float, bool, or keep as string."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply STORESYNC_<SECTION>_<KEY> env var overrides to config data.

    For example, ``STORESYNC_REMOTE_CONSUMER_KEY`` maps to section
    ``remote``, field ``consumer_key``. List fields take a
    comma-separated value.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    known_sections = sorted(
        StoreSyncConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()  # e.g. "remote_consumer_key"
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_model = StoreSyncConfig.model_fields[matched_section].annotation
        field_info = section_model.model_fields.get(matched_field)
        if field_info is None:
            logger.warning("Ignoring unknown config override %s", key)
            continue
        if not isinstance(data.get(matched_section), dict):
            data[matched_section] = {}
        if field_info.annotation == list[str]:
            data[matched_section][matched_field] = [
                part.strip() for part in value.split(",") if part.strip()
            ]
        elif field_info.annotation in (str, str | None):
            data[matched_section][matched_field] = value
        else:
            data[matched_section][matched_field] = _coerce_env_value(value)
    return data


def load_config(config_path: str | None = None) -> StoreSyncConfig:
    """Load StoreSync configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.storesync/).

    Returns:
        Parsed and validated StoreSyncConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    # Resolve ${VAR} references
    data = _resolve_env_vars_recursive(raw_data)

    # Apply STORESYNC_ env var overrides
    data = _apply_env_overrides(data)

    return StoreSyncConfig(**data)
