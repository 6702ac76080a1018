"""SubtitlePreference value object - picks the subtitle track to turn on.

Hey future me - the user configures an ordered list of text patterns, e.g.
["english", "-sdh"]. Plain patterns are REQUIRED substrings, patterns starting
with "-" are FORBIDDEN substrings. A stream qualifies when its display title
contains every required one and none of the forbidden ones (case-insensitive).
The first qualifying stream wins. No patterns, or nothing qualifies -> no
preference, and ActiveSession falls back to the first available stream.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rewindsubs.domain.entities.session_snapshot import SubtitleStream

NEGATION_PREFIX = "-"


@dataclass(frozen=True)
class SubtitlePreference:
    """Parsed include/exclude patterns."""

    required: tuple[str, ...] = ()
    forbidden: tuple[str, ...] = ()

    @classmethod
    def from_patterns(cls, patterns: Iterable[str]) -> "SubtitlePreference":
        required: list[str] = []
        forbidden: list[str] = []
        for raw in patterns:
            pattern = raw.strip()
            if not pattern:
                continue
            if pattern.startswith(NEGATION_PREFIX):
                negated = pattern[len(NEGATION_PREFIX) :].strip()
                if negated:
                    forbidden.append(negated.lower())
            else:
                required.append(pattern.lower())
        return cls(required=tuple(required), forbidden=tuple(forbidden))

    @property
    def is_empty(self) -> bool:
        return not self.required and not self.forbidden

    def matches(self, display_title: str) -> bool:
        title = display_title.lower()
        if any(pattern in title for pattern in self.forbidden):
            return False
        return all(pattern in title for pattern in self.required)

    def select(self, streams: Sequence["SubtitleStream"]) -> "SubtitleStream | None":
        """Return the first stream matching the patterns, or None."""
        if self.is_empty:
            return None
        for stream in streams:
            if self.matches(stream.extended_display_title):
                return stream
        return None
