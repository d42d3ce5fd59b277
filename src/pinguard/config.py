"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings so a misconfigured deployment fails at startup, not on
the first refresh. Only AppSettings is a BaseSettings instance; sub-settings
are plain BaseModel classes populated via env_nested_delimiter="__", so
SOURCE__URL maps to source.url, PINNING__KILL_SWITCH to pinning.kill_switch.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root, independent of the cwd.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class SourceSettings(BaseModel):
    """Where the policy document is polled from. No URL means no remote refresh."""

    url: str | None = Field(default=None, description="Policy document endpoint URL")
    timeout_seconds: float = Field(default=10.0, gt=0)
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra request headers, e.g. an API key",
    )


class SchedulerSettings(BaseModel):
    """
    Refresh schedule as a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
      "*/15 * * * *" — every 15 minutes (default)
      "0 * * * *"    — hourly
    """

    cron: str = Field(
        default="*/15 * * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class PinningSettings(BaseModel):
    max_policy_age_seconds: int = Field(default=86_400, ge=1)
    builtin_pins_file: Path | None = Field(
        default=None,
        description='JSON object of embedded pins: {"host": ["<base64>", ...]}',
    )
    kill_switch: bool = Field(
        default=False,
        description="Serve the disabled policy and never refresh",
    )
    telemetry_queue_size: int = Field(default=1024, ge=1)


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    source: SourceSettings = Field(default_factory=lambda: SourceSettings())
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())
    pinning: PinningSettings = Field(default_factory=lambda: PinningSettings())

    run_on_startup: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
