# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.settings",
#   "purpose": "Typed configuration models, YAML loading, and IKFAST_* environment overrides",
#   "sections": [
#     {"id": "repositorysettings", "name": "RepositorySettings", "anchor": "class-repositorysettings", "kind": "class"},
#     {"id": "apisettings", "name": "ApiSettings", "anchor": "class-apisettings", "kind": "class"},
#     {"id": "retrysettings", "name": "RetrySettings", "anchor": "class-retrysettings", "kind": "class"},
#     {"id": "pollingsettings", "name": "PollingSettings", "anchor": "class-pollingsettings", "kind": "class"},
#     {"id": "artifactsettings", "name": "ArtifactSettings", "anchor": "class-artifactsettings", "kind": "class"},
#     {"id": "uploadsettings", "name": "UploadSettings", "anchor": "class-uploadsettings", "kind": "class"},
#     {"id": "quotasettings", "name": "QuotaSettings", "anchor": "class-quotasettings", "kind": "class"},
#     {"id": "loggingsettings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "settings", "name": "Settings", "anchor": "class-settings", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"},
#     {"id": "get-settings", "name": "get_settings", "anchor": "function-get-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the remote solver generator.

Settings are grouped per concern (repository coordinates, HTTP API, retries,
polling, artifacts, uploads, quota, logging) and aggregated by
:class:`Settings`, a ``pydantic-settings`` root that reads overrides from
``IKFAST_*`` environment variables (``__`` separates nested keys, e.g.
``IKFAST_POLLING__TIMEOUT_SEC=600``). Values from an optional YAML file sit
between the defaults and the environment.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

#: Lowest poll interval (seconds) that keeps a single client well inside the
#: provider's authenticated rate limit.
RATE_LIMIT_SAFE_INTERVAL_SEC = 5.0

IK_TYPES = (
    "transform6d",
    "translation3d",
    "direction3d",
    "ray4d",
    "lookat3d",
    "translationdirection5d",
    "translationxy5d",
)
DEFAULT_IK_TYPE = "transform6d"


class RepositorySettings(BaseModel):
    """Coordinates of the repository hosting the generator workflow."""

    model_config = ConfigDict(frozen=True)

    owner: str = Field(default="shine-tong", min_length=1)
    name: str = Field(default="ikfast-online", min_length=1)
    branch: str = Field(default="main", min_length=1)
    workflow_file: str = Field(default="ikfast.yml", min_length=1)
    input_path: str = Field(default="jobs/current/robot.urdf", min_length=1)


class ApiSettings(BaseModel):
    """HTTP settings for the job API client."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(default="https://api.github.com")
    api_version: str = Field(default="2022-11-28")
    timeout_connect: float = Field(default=5.0, gt=0.0, le=60.0)
    timeout_read: float = Field(default=30.0, gt=0.0, le=300.0)
    timeout_write: float = Field(default=30.0, gt=0.0, le=300.0)
    timeout_pool: float = Field(default=5.0, gt=0.0, le=60.0)
    user_agent: str = Field(default="ikfast-online/0.1 (+https://github.com/shine-tong/ikfast-online)")
    token: Optional[SecretStr] = Field(default=None, description="Personal access token")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class RetrySettings(BaseModel):
    """Retry budget for idempotent API reads."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base: float = Field(default=0.5, ge=0.0, le=10.0)
    backoff_max: float = Field(default=8.0, ge=0.0, le=60.0)
    max_delay_sec: float = Field(default=30.0, gt=0.0, le=300.0)


class PollingSettings(BaseModel):
    """Poll cadence, backoff curve, and hard timeout for a triggered job."""

    model_config = ConfigDict(frozen=True)

    min_interval_sec: float = Field(default=RATE_LIMIT_SAFE_INTERVAL_SEC, ge=RATE_LIMIT_SAFE_INTERVAL_SEC)
    max_interval_sec: float = Field(default=30.0, gt=0.0, le=600.0)
    timeout_sec: float = Field(default=1800.0, gt=0.0)
    backoff_factor: float = Field(default=1.5, ge=1.0, le=10.0)
    backoff_step: int = Field(default=5, ge=1, description="Polls per backoff step")
    run_lookup_attempts: int = Field(default=5, ge=1, le=50)
    run_lookup_delay_sec: float = Field(default=2.0, ge=0.0, le=60.0)
    check_remote_active: bool = Field(
        default=True,
        description="Refuse to trigger while the provider lists a queued or running job",
    )

    @model_validator(mode="after")
    def check_interval_bounds(self) -> "PollingSettings":
        if self.max_interval_sec < self.min_interval_sec:
            raise ValueError(
                f"max_interval_sec ({self.max_interval_sec}) must be >= "
                f"min_interval_sec ({self.min_interval_sec})"
            )
        return self


class ArtifactSettings(BaseModel):
    """Names of the output bundle and the files the job writes into it."""

    model_config = ConfigDict(frozen=True)

    bundle_name: str = Field(default="ikfast-result", min_length=1)
    solver_filename: str = Field(default="ikfast_solver.cpp", min_length=1)
    log_filename: str = Field(default="build.log", min_length=1)
    info_log_filename: str = Field(default="info.log", min_length=1)
    checksum_path_token: str = Field(
        default="outputs/ikfast_solver.cpp",
        min_length=1,
        description="Relative path that follows the digest on the checksum log line",
    )


class UploadSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)
    allowed_extensions: List[str] = Field(default_factory=lambda: [".urdf"])

    @field_validator("allowed_extensions")
    @classmethod
    def normalize_extensions(cls, value: List[str]) -> List[str]:
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        if not normalized:
            raise ValueError("allowed_extensions must not be empty")
        return normalized


class QuotaSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    warning_threshold: float = Field(default=0.8, gt=0.0, le=1.0)


def _default_log_dir() -> Path:
    return Path(platformdirs.user_log_dir("ikfast-online"))


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    emit_json_logs: bool = Field(default=True)
    log_dir: Path = Field(default_factory=_default_log_dir)
    max_log_size_mb: int = Field(default=20, gt=0)
    retention_days: int = Field(default=14, ge=1)

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        """Normalize and validate logging level."""
        upper = str(v).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{v}'")
        return upper

    def level_int(self) -> int:
        return getattr(logging, self.level, logging.INFO)


class Settings(BaseSettings):
    """Root settings object; environment variables override file values."""

    model_config = SettingsConfigDict(
        env_prefix="IKFAST_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    artifacts: ArtifactSettings = Field(default_factory=ArtifactSettings)
    upload: UploadSettings = Field(default_factory=UploadSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment first so it wins over values loaded from YAML.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_raw_yaml(config_path: Path) -> Mapping[str, Any]:
    """Read a YAML settings file into a mapping."""

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to parse YAML configuration {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{config_path}: top-level YAML value must be a mapping")
    return data


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build :class:`Settings` from an optional YAML file plus environment overrides."""

    raw: dict[str, Any] = {}
    if config_path is not None:
        raw.update(load_raw_yaml(Path(config_path).expanduser()))
    raw.update(overrides)
    try:
        return Settings(**raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise ConfigurationError(
            f"Invalid configuration for '{location}': {first.get('msg', exc)}"
        ) from exc


_SETTINGS: Optional[Settings] = None
_SETTINGS_LOCK = threading.Lock()


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""

    global _SETTINGS  # noqa: PLW0603
    with _SETTINGS_LOCK:
        if _SETTINGS is None:
            _SETTINGS = load_settings()
        return _SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next :func:`get_settings` reloads them."""

    global _SETTINGS  # noqa: PLW0603
    with _SETTINGS_LOCK:
        _SETTINGS = None


__all__ = [
    "ApiSettings",
    "ArtifactSettings",
    "DEFAULT_IK_TYPE",
    "IK_TYPES",
    "LoggingSettings",
    "PollingSettings",
    "QuotaSettings",
    "RATE_LIMIT_SAFE_INTERVAL_SEC",
    "RepositorySettings",
    "RetrySettings",
    "Settings",
    "UploadSettings",
    "get_settings",
    "load_raw_yaml",
    "load_settings",
    "reset_settings",
]
