"""Domain value objects."""

from rewindsubs.domain.value_objects.subtitle_preference import (
    NEGATION_PREFIX,
    SubtitlePreference,
)

__all__ = ["NEGATION_PREFIX", "SubtitlePreference"]
