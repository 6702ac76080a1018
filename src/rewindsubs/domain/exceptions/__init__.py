"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing str(exception).
    # This is the base class - DON'T raise it directly! Always use a specific subclass so callers can
    # catch precisely (the registry catches MediaServerError, the monitor catches everything per pass).
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class MediaServerError(DomainException):
    """Raised when talking to the media server fails (network, HTTP status, bad XML).

    These are TRANSIENT by nature - the registry logs them, keeps its current
    tracked sessions and simply tries again on the next cycle.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.http_status = http_status


class SessionFetchError(MediaServerError):
    """Raised when the session list could not be fetched or parsed.

    Hey future me - this is THE signal that distinguishes "fetch failed" from
    "no sessions". An empty list means nobody is watching; this exception means
    we don't know. Never return [] on failure or every tracked session starts
    ageing towards removal!
    """

    pass


class MetadataFetchError(MediaServerError):
    """Raised when the metadata (available subtitle streams) of a media item can't be fetched."""

    def __init__(self, media_key: str, message: str, http_status: int | None = None) -> None:
        super().__init__(message, url=media_key, http_status=http_status)
        self.media_key = media_key


class CommandDispatchError(DomainException):
    """Raised when a player command (e.g. set subtitle stream) is rejected by the player."""

    def __init__(self, machine_id: str, message: str) -> None:
        super().__init__(f"Command to {machine_id} failed: {message}")
        self.machine_id = machine_id


class InvalidSessionDataError(DomainException):
    """Raised when a session sample can't be used (missing or nonsensical position).

    Only ever raised INSIDE a monitoring pass - the rewind monitor catches it,
    logs it and treats the pass as a no-op.
    """

    def __init__(self, playback_id: str, message: str) -> None:
        super().__init__(f"Invalid data for session {playback_id}: {message}")
        self.playback_id = playback_id
