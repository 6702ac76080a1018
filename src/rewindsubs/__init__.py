"""rewindsubs - shows subtitles after a rewind on Plex, hides them once you catch up."""

__version__ = "0.1.0"
