"""External service integrations."""

from rewindsubs.infrastructure.integrations.plex_client import PlexClient
from rewindsubs.infrastructure.integrations.plex_notifications import (
    PlexNotificationListener,
    parse_playing_notifications,
)

__all__ = ["PlexClient", "PlexNotificationListener", "parse_playing_notifications"]
