"""Configuration module for rewindsubs."""

from .settings import (
    MonitorSettings,
    ObservabilitySettings,
    PlexSettings,
    Settings,
    get_settings,
)

__all__ = [
    "MonitorSettings",
    "ObservabilitySettings",
    "PlexSettings",
    "Settings",
    "get_settings",
]
