"""Vigil configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from vigil.core.constants import (
    ABSOLUTE_TIMEOUT_HOURS,
    ADMIN_ACTION_THRESHOLD,
    ADMIN_ACTION_WINDOW_SECONDS,
    BREACH_API_URL,
    BREACH_CHECK_TIMEOUT_SECONDS,
    BRUTE_FORCE_THRESHOLD,
    BRUTE_FORCE_WINDOW_SECONDS,
    COMPLIANCE_INTERVAL_SECONDS,
    CONFIG_FILENAME,
    DB_FILENAME,
    EXPORT_THRESHOLD,
    EXPORT_WINDOW_SECONDS,
    FALLBACK_FILENAME,
    FALLBACK_REPLAY_INTERVAL_SECONDS,
    IDLE_TIMEOUT_MINUTES,
    INCIDENT_REPEAT_THRESHOLD,
    INCIDENT_REPEAT_WINDOW_HOURS,
    LEDGER_RETRY_ATTEMPTS,
    LEDGER_WRITE_TIMEOUT_SECONDS,
    LOCKOUT_MINUTES,
    LOG_FILENAME,
    MAX_CONCURRENT_SESSIONS,
    MAX_FAILED_ATTEMPTS,
    METRICS_INTERVAL_SECONDS,
    NOTIFY_TIMEOUT_SECONDS,
    PASSWORD_HISTORY_COUNT,
    PASSWORD_MAX_AGE_DAYS,
    PASSWORD_MIN_LENGTH,
    RESTRICTED_ACCESS_THRESHOLD,
    RESTRICTED_ACCESS_WINDOW_SECONDS,
    SESSION_SWEEP_BATCH_SIZE,
    SESSION_SWEEP_INTERVAL_SECONDS,
    SESSION_TIMEOUT_THRESHOLD,
    SESSION_TIMEOUT_WINDOW_SECONDS,
    TRACKER_MAX_EVENTS_PER_KEY,
    TRACKER_SWEEP_INTERVAL_SECONDS,
    TRAVEL_CROSS_COUNTRY_MINUTES,
    TRAVEL_MAX_SPEED_KMH,
    VIGIL_DIR_NAME,
    WARNING_THRESHOLD_MINUTES,
)
from vigil.core.exceptions import ConfigError, ConfigNotFoundError


def vigil_dir() -> Path:
    """Return the Vigil data directory (~/.vigil), creating it if needed."""
    d = Path.home() / VIGIL_DIR_NAME
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class SessionConfig(BaseModel):
    max_concurrent: int = MAX_CONCURRENT_SESSIONS
    idle_timeout_minutes: int = IDLE_TIMEOUT_MINUTES
    absolute_timeout_hours: int = ABSOLUTE_TIMEOUT_HOURS
    warning_minutes: int = WARNING_THRESHOLD_MINUTES
    sweep_interval_seconds: int = SESSION_SWEEP_INTERVAL_SECONDS
    sweep_batch_size: int = SESSION_SWEEP_BATCH_SIZE

    @field_validator("max_concurrent", "idle_timeout_minutes", "absolute_timeout_hours")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def idle_within_absolute(self) -> SessionConfig:
        if self.idle_timeout_minutes > self.absolute_timeout_hours * 60:
            raise ValueError("idle_timeout_minutes cannot exceed absolute_timeout_hours")
        if self.warning_minutes >= self.idle_timeout_minutes:
            raise ValueError("warning_minutes must be shorter than idle_timeout_minutes")
        return self

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def absolute_timeout(self) -> timedelta:
        return timedelta(hours=self.absolute_timeout_hours)

    @property
    def warning_threshold(self) -> timedelta:
        return timedelta(minutes=self.warning_minutes)


class ThresholdConfig(BaseModel):
    threshold: int
    window_seconds: int

    @field_validator("threshold", "window_seconds")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


class TravelConfig(BaseModel):
    max_speed_kmh: float = TRAVEL_MAX_SPEED_KMH
    cross_country_minutes: int = TRAVEL_CROSS_COUNTRY_MINUTES


def _threshold(count: int, seconds: int) -> Any:
    return Field(default_factory=lambda: ThresholdConfig(threshold=count, window_seconds=seconds))


class DetectionConfig(BaseModel):
    brute_force: ThresholdConfig = _threshold(BRUTE_FORCE_THRESHOLD, BRUTE_FORCE_WINDOW_SECONDS)
    admin_action: ThresholdConfig = _threshold(
        ADMIN_ACTION_THRESHOLD, ADMIN_ACTION_WINDOW_SECONDS
    )
    export: ThresholdConfig = _threshold(EXPORT_THRESHOLD, EXPORT_WINDOW_SECONDS)
    session_timeout: ThresholdConfig = _threshold(
        SESSION_TIMEOUT_THRESHOLD, SESSION_TIMEOUT_WINDOW_SECONDS
    )
    restricted_access: ThresholdConfig = _threshold(
        RESTRICTED_ACCESS_THRESHOLD, RESTRICTED_ACCESS_WINDOW_SECONDS
    )
    travel: TravelConfig = Field(default_factory=TravelConfig)
    signatures_path: str = ""  # empty → built-in injection signatures
    tracker_max_events_per_key: int = TRACKER_MAX_EVENTS_PER_KEY
    tracker_sweep_interval_seconds: int = TRACKER_SWEEP_INTERVAL_SECONDS


class AlertConfig(BaseModel):
    repeat_threshold: int = INCIDENT_REPEAT_THRESHOLD
    repeat_window_hours: int = INCIDENT_REPEAT_WINDOW_HOURS
    webhook_url: str = ""
    webhook_timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS
    notify_in_background: bool = True

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if v and not v.startswith(("https://", "http://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v


class CredentialConfig(BaseModel):
    min_length: int = PASSWORD_MIN_LENGTH
    history_count: int = PASSWORD_HISTORY_COUNT
    max_age_days: int = PASSWORD_MAX_AGE_DAYS
    max_failed_attempts: int = MAX_FAILED_ATTEMPTS
    lockout_minutes: int = LOCKOUT_MINUTES
    require_symbol: bool = False
    breach_check_enabled: bool = True
    breach_api_url: str = BREACH_API_URL
    breach_timeout_seconds: float = BREACH_CHECK_TIMEOUT_SECONDS

    @field_validator("min_length")
    @classmethod
    def validate_min_length(cls, v: int) -> int:
        if v < 8:
            raise ValueError("min_length below 8 is not permitted")
        return v


class AuditConfig(BaseModel):
    write_timeout_seconds: float = LEDGER_WRITE_TIMEOUT_SECONDS
    retry_attempts: int = LEDGER_RETRY_ATTEMPTS
    fallback_path: str = ""  # empty → use default
    # Actions that must be durably recorded before the caller proceeds
    synchronous_actions: list[str] = Field(
        default_factory=lambda: [
            "PASSWORD_CHANGED",
            "ROLE_CHANGED",
            "PERMISSION_GRANTED",
            "PERMISSION_REVOKED",
            "USER_DELETED",
            "SYSTEM_CONFIG_CHANGED",
        ]
    )

    @field_validator("synchronous_actions", mode="before")
    @classmethod
    def parse_actions(cls, v: Any) -> Any:
        """Accept both list and comma-separated string."""
        if isinstance(v, str):
            return [a.strip().upper() for a in v.split(",") if a.strip()]
        return v


class SchedulerConfig(BaseModel):
    metrics_interval_seconds: int = METRICS_INTERVAL_SECONDS
    compliance_interval_seconds: int = COMPLIANCE_INTERVAL_SECONDS
    fallback_replay_interval_seconds: int = FALLBACK_REPLAY_INTERVAL_SECONDS


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v.lower()


class DatabaseConfig(BaseModel):
    path: str = ""  # empty → use default


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class VigilConfig(BaseModel):
    """Root Vigil configuration model."""

    sessions: SessionConfig = Field(default_factory=SessionConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Computed paths (not stored in config file)
    _config_path: Path | None = None

    @property
    def db_path(self) -> Path:
        if self.database.path:
            return Path(self.database.path).expanduser()
        return vigil_dir() / DB_FILENAME

    @property
    def fallback_path(self) -> Path:
        if self.audit.fallback_path:
            return Path(self.audit.fallback_path).expanduser()
        return self.db_path.parent / FALLBACK_FILENAME

    @property
    def log_path(self) -> Path:
        return self.db_path.parent / LOG_FILENAME


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("VIGIL_CONFIG"):
        return Path(env_path)
    return vigil_dir() / CONFIG_FILENAME


def load_config(path: Path | None = None, *, missing_ok: bool = False) -> VigilConfig:
    """
    Load VigilConfig from TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (VIGIL_*)
      2. Config file (~/.vigil/config.toml)
      3. Built-in defaults

    When ``missing_ok`` is set, a missing file yields the defaults (still
    subject to environment overrides) instead of ConfigNotFoundError.
    """
    import tomllib

    cfg_path = path or _config_file_path()

    data: dict[str, Any] = {}
    if cfg_path.exists():
        try:
            with open(cfg_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc
    elif not missing_ok:
        raise ConfigNotFoundError(
            f"Vigil is not configured. Run 'vigil init' first.\n"
            f"(Config file not found: {cfg_path})"
        )

    try:
        _apply_env_overrides(data)
        config = VigilConfig.model_validate(data)
    except ValueError as exc:
        raise ConfigError(f"Invalid config at {cfg_path}: {exc}") from exc

    config._config_path = cfg_path
    return config


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay VIGIL_* environment variables onto the parsed TOML data."""
    if level := os.environ.get("VIGIL_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level
    if fmt := os.environ.get("VIGIL_LOG_FORMAT"):
        data.setdefault("logging", {})["format"] = fmt
    if db := os.environ.get("VIGIL_DB_PATH"):
        data.setdefault("database", {})["path"] = db
    if limit := os.environ.get("VIGIL_MAX_CONCURRENT_SESSIONS"):
        data.setdefault("sessions", {})["max_concurrent"] = int(limit)
    if idle := os.environ.get("VIGIL_IDLE_TIMEOUT_MINUTES"):
        data.setdefault("sessions", {})["idle_timeout_minutes"] = int(idle)
    if url := os.environ.get("VIGIL_WEBHOOK_URL"):
        data.setdefault("alerts", {})["webhook_url"] = url
    if breach := os.environ.get("VIGIL_BREACH_CHECK_ENABLED"):
        data.setdefault("credentials", {})["breach_check_enabled"] = breach.lower() in (
            "1",
            "true",
            "yes",
        )
    if actions := os.environ.get("VIGIL_SYNCHRONOUS_ACTIONS"):
        data.setdefault("audit", {})["synchronous_actions"] = actions


def default_config_data() -> dict[str, Any]:
    """Return the default configuration as a TOML-serialisable dict."""
    return VigilConfig().model_dump(mode="json")


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    # Write atomically
    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except (OSError, TypeError, ValueError) as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
