"""Operator configuration for a piiwatch stage.

Every piiwatch process reads one ``PiiWatchSettings`` at startup. Values come
from ``PIIWATCH_*`` environment variables or a ``.env`` file and are
validated before any component is built: a missing or malformed value is a
fatal :class:`~piiwatch.core.errors.ConfigError`, never a half-configured
start.

Manifesto:
    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** Reads from env vars and .env files
    - **Stage-scoped names:** Bucket and job names derive from ``stage``
    - **References, not secrets:** Credentials are configured as references

Examples:
    >>> settings = load_settings(stage="dev", webhook_url="https://example.invalid/hook")
    >>> settings.bucket_name
    'piiwatch-logs-dev'
    >>> settings.job_name
    'Function-Logs-PII-dev'

Tags:
    settings, configuration, pydantic, environment, piiwatch
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from piiwatch.core.errors import InvalidConfigError, MissingConfigError
from piiwatch.core.models import Cadence
from piiwatch.sink.object_store import validate_key


class PiiWatchSettings(BaseSettings):
    """Settings for one pipeline stage.

    Fields
    ──────
    stage                   : Deployment stage; suffixes every resource name (required)
    webhook_url             : Alert destination endpoint (required)
    classification_cadence  : hourly | daily | weekly | monthly
    initial_run             : First tick backfills every existing object
    """

    model_config = SettingsConfigDict(
        env_prefix="PIIWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Operator ─────────────────────────────────────────────────
    stage: str = Field(min_length=1, pattern=r"^[a-z0-9][a-z0-9-]*$")
    webhook_url: str
    classification_cadence: Cadence = Cadence.DAILY
    initial_run: bool = False

    # ── Log buffer ───────────────────────────────────────────────
    buffer_path: Path = Field(default_factory=lambda: Path.home() / ".piiwatch" / "buffer.db")
    buffer_capacity: int = Field(default=10_000, gt=0)
    buffer_full_policy: Literal["block", "fail"] = "block"
    buffer_block_timeout: float = Field(default=5.0, ge=0)

    # ── Batch delivery ───────────────────────────────────────────
    flush_threshold_bytes: int = Field(default=100 * 1024, gt=0)
    flush_window_seconds: float = Field(default=60.0, gt=0)
    sink_poll_interval: float = Field(default=1.0, gt=0)
    flush_max_attempts: int = Field(default=5, ge=1)

    # ── Storage ──────────────────────────────────────────────────
    storage_dir: Path = Field(default_factory=lambda: Path.home() / ".piiwatch" / "objects")
    object_prefix: str = "fn-logs"
    retention_profile: Literal["logs", "archive"] = "logs"
    hot_days: int = Field(default=7, gt=0)
    encryption_key_ref: str = "secret:env:PIIWATCH_MASTER_KEY"

    # ── Classification ───────────────────────────────────────────
    jobs_path: Path = Field(default_factory=lambda: Path.home() / ".piiwatch" / "jobs.db")
    overlap_policy: Literal["skip", "defer", "independent"] = "skip"
    scheduler_interval: float = Field(default=60.0, gt=0)
    submit_max_attempts: int = Field(default=3, ge=1)

    # ── Alert delivery ───────────────────────────────────────────
    webhook_username: str = "fake-teams-user"
    webhook_password_ref: str = "secret:env:PIIWATCH_WEBHOOK_PASSWORD"
    webhook_timeout: float = Field(default=10.0, gt=0)
    webhook_max_attempts: int = Field(default=5, ge=1)
    webhook_format: Literal["generic", "teams"] = "generic"
    failures_path: Path = Field(default_factory=lambda: Path.home() / ".piiwatch" / "failures.db")
    console_region: str = "us-east-1"
    issue_board_url: str = "https://issues.example.com/board"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["json", "console", "auto"] = "auto"

    @field_validator("webhook_url")
    @classmethod
    def _check_webhook_url(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value

    @field_validator("object_prefix")
    @classmethod
    def _check_object_prefix(cls, value: str) -> str:
        return validate_key(value)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def bucket_name(self) -> str:
        return f"piiwatch-logs-{self.stage}"

    @property
    def job_name(self) -> str:
        return f"Function-Logs-PII-{self.stage}"

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


def load_settings(**overrides: Any) -> PiiWatchSettings:
    """Build and validate settings, failing fast with a ConfigError.

    Keyword overrides take precedence over the environment.

    Raises:
        MissingConfigError: A required value is absent
        InvalidConfigError: A value failed validation
    """
    try:
        return PiiWatchSettings(**overrides)
    except ValidationError as exc:
        errors = exc.errors()
        first = errors[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "<settings>"
        if first.get("type") == "missing":
            raise MissingConfigError(key) from exc
        raise InvalidConfigError(key, first.get("input"), f"Invalid configuration for {key}: {first.get('msg')}") from exc


__all__ = ["PiiWatchSettings", "load_settings"]
