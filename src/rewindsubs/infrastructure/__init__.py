"""Infrastructure layer - Plex integration and observability."""
