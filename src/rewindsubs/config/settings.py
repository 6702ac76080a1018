"""Application settings loaded from environment variables (and an optional .env file).

Hey future me - every group is its own BaseSettings with its own env prefix
(PLEX_, MONITOR_, LOG_) so the variable names stay short and readable:

    PLEX_URL=http://192.168.1.10:32400
    PLEX_TOKEN=xxxxxxxx
    MONITOR_ACTIVE_FREQUENCY=1
    MONITOR_SUBTITLE_PREFERENCE_PATTERNS=english,-sdh
    LOG_LEVEL=DEBUG

Invalid values (zero frequencies, negative cooldown, ...) fail validation at
startup instead of silently breaking the monitor loop later.
"""

import json
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Share of the active frequency the session fetch may take when no explicit timeout is set
AUTO_ACTIVE_TIMEOUT_RATIO = 0.9


class PlexSettings(BaseSettings):
    """Connection to the Plex server."""

    model_config = SettingsConfigDict(env_prefix="PLEX_", env_file=".env", extra="ignore")

    url: str = Field(default="http://127.0.0.1:32400", description="Plex server base URL")
    token: str = Field(default="", description="X-Plex-Token used for every request")
    client_identifier: str = Field(
        default="rewindsubs",
        description="X-Plex-Client-Identifier we announce ourselves with",
    )
    request_timeout: float = Field(default=10.0, gt=0, description="Default HTTP timeout (s)")
    send_direct_to_device: bool = Field(
        default=False,
        description="Send player commands straight to the device instead of via the server",
    )
    player_port: int = Field(default=32500, gt=0, le=65535, description="Player control port")

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class MonitorSettings(BaseSettings):
    """Rewind detection and polling cadence."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", env_file=".env", extra="ignore")

    active_frequency: float = Field(
        default=1.0, gt=0, description="Seconds between polls while something is active"
    )
    idle_frequency: float = Field(
        default=30.0, gt=0, description="Seconds between polls while nothing is playing"
    )
    max_rewind: float = Field(
        default=60.0, gt=0, description="Rewinds further back than this never show subtitles"
    )
    cooldown_count: int = Field(
        default=5, ge=0, description="Cycles to ignore rewinds after rewinding too far"
    )
    subtitle_preference_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description='Subtitle title patterns, "-" prefix excludes (e.g. "english,-sdh")',
    )
    min_resolution: float = Field(
        default=0.0, ge=0, description="Lower bound (s) for the position resolution of every pass"
    )
    missing_grace_period: float = Field(
        default=60.0, ge=0, description="Seconds a session may vanish before it is dropped"
    )
    active_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        description="Session fetch timeout while active (None = 90% of active_frequency)",
    )
    use_event_polling: bool = Field(
        default=True, description="Listen for real-time playing notifications"
    )
    health_log_interval_cycles: int = Field(
        default=300, gt=0, description="Cycles between worker.health log lines"
    )

    # Hey future me - NoDecode stops pydantic-settings from json.loads()-ing the env value
    # itself, so plain "english,-sdh" works. A JSON list still works too.
    @field_validator("subtitle_preference_patterns", mode="before")
    @classmethod
    def parse_patterns(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def check_frequencies(self) -> "MonitorSettings":
        if self.idle_frequency < self.active_frequency:
            raise ValueError(
                f"idle_frequency ({self.idle_frequency}) must not be shorter than "
                f"active_frequency ({self.active_frequency})"
            )
        return self

    @property
    def active_timeout_seconds(self) -> float:
        """Fetch timeout while active, derived from active_frequency unless set explicitly."""
        if self.active_timeout_ms is not None:
            return self.active_timeout_ms / 1000
        return round(self.active_frequency * AUTO_ACTIVE_TIMEOUT_RATIO, 3)


class ObservabilitySettings(BaseSettings):
    """Logging output."""

    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", extra="ignore")

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    json_format: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level


class Settings(BaseSettings):
    """All settings groups."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "rewindsubs"
    plex: PlexSettings = Field(default_factory=PlexSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
