"""authwatch configuration management.

Settings come from an optional JSON file (``/etc/authwatch/config.json`` by
default, or the path in ``AUTHWATCH_CONFIG``) and from ``AUTHWATCH_*``
environment variables, which take precedence over the file.
"""

import json
import os
import socket
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from authwatch.errors import ConfigError
from authwatch.scheduler import load_timezone, parse_time_of_day

DEFAULT_CONFIG_PATH = "/etc/authwatch/config.json"
DEFAULT_DATABASE_PATH = "/var/lib/authwatch/authwatch.db"
DEFAULT_GEOIP_PATH = "/var/lib/authwatch/dbip-city-lite.mmdb"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """authwatch configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHWATCH_",
        case_sensitive=False,
        extra="ignore",
    )

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    server_name: str = Field(default_factory=socket.gethostname)

    # GeoIP
    geoip_enabled: bool = True
    geoip_database_path: str = DEFAULT_GEOIP_PATH

    # Storage
    database_path: str = DEFAULT_DATABASE_PATH
    retention_days: int = Field(default=90, description="Days of events to keep")

    # Daily report
    daily_report_enabled: bool = True
    daily_report_time: str = Field(default="08:00", description="Local HH:MM")
    daily_report_timezone: str = "UTC"

    # Log source
    source: Literal["journal", "authlog"] = "journal"
    journal_unit: str = "ssh"
    syslog_identifier: str = "sshd"
    auth_log_path: str = "/var/log/auth.log"
    event_buffer_size: int = Field(default=100, description="Event channel capacity")

    # Daemon
    scheduler_poll_seconds: float = Field(default=30.0, description="Scheduler tick")
    shutdown_timeout_seconds: float = Field(
        default=5.0, description="Wait for the log subprocess to exit before SIGKILL"
    )
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over the JSON file
        return (
            init_settings,
            env_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # Validators
    @field_validator("daily_report_time")
    @classmethod
    def validate_report_time(cls, v: str) -> str:
        hour, minute = parse_time_of_day(v)
        return f"{hour:02d}:{minute:02d}"

    @field_validator("daily_report_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        load_timezone(v)
        return v

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention_days must be at least 1")
        return v

    @field_validator("event_buffer_size")
    @classmethod
    def validate_buffer_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("event_buffer_size must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {v}")
        return level

    @field_validator("server_name")
    @classmethod
    def default_server_name(cls, v: str) -> str:
        return v or socket.gethostname()

    def validate_for_daemon(self) -> None:
        """Check the settings the daemon cannot run without.

        Raises:
            ConfigError: If Telegram credentials or the database path are missing.
        """
        if not self.telegram_bot_token:
            raise ConfigError("telegram_bot_token is required")
        if not self.telegram_chat_id:
            raise ConfigError("telegram_chat_id is required")
        if not self.database_path:
            raise ConfigError("database_path is required")

    def redacted(self) -> dict[str, Any]:
        """Settings as a plain dict with the bot token masked."""
        data = self.model_dump(mode="json")
        token = data.get("telegram_bot_token")
        if token:
            data["telegram_bot_token"] = token[:4] + "..." if len(token) > 8 else "***"
        return data


def resolve_config_path(path: Optional[str | Path] = None) -> Path:
    """Pick the config file path: explicit, then AUTHWATCH_CONFIG, then default."""
    if path:
        return Path(path)
    return Path(os.environ.get("AUTHWATCH_CONFIG") or DEFAULT_CONFIG_PATH)


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Load settings from the JSON config file and environment.

    A missing file is not an error; defaults and environment apply.

    Raises:
        ConfigError: If the file is unreadable, not valid JSON, or a value
            fails validation.
    """
    config_path = resolve_config_path(path)

    if config_path.exists():
        try:
            json.loads(config_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"Failed to read config file {config_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e

    class FileSettings(Settings):
        model_config = SettingsConfigDict(json_file=config_path, json_file_encoding="utf-8")

    try:
        return FileSettings()
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
