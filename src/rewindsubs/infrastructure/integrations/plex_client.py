"""Plex HTTP client - session list, media metadata, player timeline and subtitle commands."""

import itertools
import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from rewindsubs.config.settings import PlexSettings
from rewindsubs.domain.entities import (
    FineGrainedStatus,
    PlayerInfo,
    PlayerState,
    SessionSnapshot,
    SubtitleStream,
)
from rewindsubs.domain.exceptions import MetadataFetchError, SessionFetchError
from rewindsubs.domain.ports import CommandResult, IMediaServerClient

logger = logging.getLogger(__name__)

SUBTITLE_STREAM_TYPE = "3"
PRODUCT_NAME = "rewindsubs"


def _int_attr(element: ET.Element, name: str, default: int = 0) -> int:
    value = element.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_subtitle_stream(element: ET.Element) -> SubtitleStream:
    return SubtitleStream(
        id=_int_attr(element, "id"),
        index=_int_attr(element, "index"),
        extended_display_title=element.get("extendedDisplayTitle", ""),
        language=element.get("language", ""),
        selected=element.get("selected") == "1",
        format=element.get("format", ""),
        title=element.get("title", ""),
        location=element.get("location", ""),
        is_external=element.get("external") == "1",
    )


class PlexClient(IMediaServerClient):
    """Talks to a Plex Media Server (and optionally straight to its players)."""

    # Hey future me - the session list and metadata come as XML unless you ask for JSON, and the
    # player control endpoints ONLY speak XML. So we stay XML all the way and parse with
    # ElementTree. Every player command needs a commandID that keeps increasing for the lifetime
    # of our client identifier - players silently ignore commands with a commandID they've
    # already seen. That's what _command_ids is for, never reset it while the process lives.
    def __init__(
        self,
        settings: PlexSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the Plex client.

        Args:
            settings: Plex connection settings
            transport: Optional httpx transport (tests pass an httpx.MockTransport)
        """
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._command_ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.url,
                headers={
                    "X-Plex-Token": self.settings.token,
                    "X-Plex-Client-Identifier": self.settings.client_identifier,
                    "X-Plex-Product": PRODUCT_NAME,
                    "Accept": "application/xml",
                },
                timeout=self.settings.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PlexClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def next_command_id(self) -> int:
        return next(self._command_ids)

    def _player_base_url(self, player: PlayerInfo) -> str:
        if self.settings.send_direct_to_device and player.address:
            return player.direct_url
        return self.settings.url

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def fetch_sessions(self, timeout: float | None = None) -> list[SessionSnapshot]:
        """Fetch all current playback sessions from /status/sessions.

        Raises:
            SessionFetchError: On HTTP errors or unparseable XML
        """
        url = "/status/sessions"
        client = await self._get_client()
        request_timeout = timeout if timeout is not None else self.settings.request_timeout

        try:
            response = await client.get(url, timeout=request_timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SessionFetchError(
                f"Session list request failed: HTTP {e.response.status_code}",
                url=url,
                http_status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise SessionFetchError(f"Session list request failed: {e}", url=url) from e

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise SessionFetchError(f"Invalid session list XML: {e}", url=url) from e

        sessions: list[SessionSnapshot] = []
        for video in root.findall("Video"):
            snapshot = self._parse_session(video)
            if snapshot is None:
                continue
            sessions.append(snapshot)

        logger.debug("Fetched %d active sessions", len(sessions))
        return sessions

    def _parse_session(self, video: ET.Element) -> SessionSnapshot | None:
        player_el = video.find("Player")
        if player_el is None:
            logger.debug("Session %s has no Player element, skipping", video.get("sessionKey"))
            return None

        player = PlayerInfo(
            title=player_el.get("title", ""),
            machine_identifier=player_el.get("machineIdentifier", ""),
            address=player_el.get("address", ""),
            port=_int_attr(player_el, "port", self.settings.player_port),
            state=PlayerState.parse(player_el.get("state")),
            product=player_el.get("product", ""),
            platform=player_el.get("platform", ""),
        )

        # playbackId changes on episode change; sessionKey is the fallback for old servers
        playback_id = player_el.get("playbackId") or video.get("sessionKey", "")
        if not playback_id:
            logger.debug("Session for %s has no playback id, skipping", player.title)
            return None

        selected_subtitle_id = 0
        for stream in video.iterfind(f"Media/Part/Stream[@streamType='{SUBTITLE_STREAM_TYPE}']"):
            if stream.get("selected") == "1":
                selected_subtitle_id = _int_attr(stream, "id")
                break

        view_offset = video.get("viewOffset")
        return SessionSnapshot(
            key=video.get("key", ""),
            playback_id=playback_id,
            player=player,
            position_ms=_int_attr(video, "viewOffset") if view_offset else None,
            selected_subtitle_stream_id=selected_subtitle_id,
            rating_key=video.get("ratingKey", ""),
            session_key=video.get("sessionKey", ""),
            title=video.get("title", ""),
            grandparent_title=video.get("grandparentTitle", ""),
            media_type=video.get("type", ""),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def fetch_available_subtitles(self, media_key: str) -> list[SubtitleStream]:
        """Fetch every subtitle stream (streamType=3) of a media item.

        Raises:
            MetadataFetchError: On HTTP errors or unparseable XML
        """
        client = await self._get_client()
        try:
            response = await client.get(media_key)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MetadataFetchError(
                media_key,
                f"HTTP {e.response.status_code}",
                http_status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise MetadataFetchError(media_key, str(e)) from e

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise MetadataFetchError(media_key, f"Invalid metadata XML: {e}") from e

        item = root.find("Video")
        if item is None:
            item = root.find("Episode")
        if item is None:
            item = root.find("Track")
        if item is None:
            return []

        return [
            _parse_subtitle_stream(stream)
            for stream in item.iterfind(
                f"Media/Part/Stream[@streamType='{SUBTITLE_STREAM_TYPE}']"
            )
        ]

    # ------------------------------------------------------------------
    # Player control
    # ------------------------------------------------------------------

    async def fetch_fine_grained_status(self, player: PlayerInfo) -> FineGrainedStatus | None:
        """Poll the player's timeline once (wait=0). Best effort, None on any failure."""
        client = await self._get_client()
        url = f"{self._player_base_url(player)}/player/timeline/poll"

        try:
            response = await client.get(
                url,
                params={"wait": 0, "commandID": self.next_command_id()},
                headers={"X-Plex-Target-Client-Identifier": player.machine_identifier},
            )
            response.raise_for_status()
            root = ET.fromstring(response.text)
        except (httpx.HTTPError, ET.ParseError) as e:
            logger.debug("Timeline poll for %s failed: %s", player.title, e)
            return None

        # Usually three timelines (music, photo, video); only the playing one has a time
        for timeline in root.findall("Timeline"):
            if not timeline.get("time"):
                continue
            return FineGrainedStatus(
                position_ms=_int_attr(timeline, "time"),
                subtitle_stream_id=_int_attr(timeline, "subtitleStreamID"),
            )
        return None

    async def set_subtitle_stream(
        self, player: PlayerInfo, stream_id: int | None
    ) -> CommandResult:
        """Select a subtitle stream on the player (None/0 turns subtitles off)."""
        client = await self._get_client()
        url = f"{self._player_base_url(player)}/player/playback/setStreams"

        try:
            response = await client.get(
                url,
                params={
                    "subtitleStreamID": stream_id or 0,
                    "commandID": self.next_command_id(),
                },
                headers={"X-Plex-Target-Client-Identifier": player.machine_identifier},
            )
        except httpx.HTTPError as e:
            return CommandResult.failed(f"Request to {player.title} failed: {e}")

        if response.is_error:
            return CommandResult.failed(f"{player.title} answered HTTP {response.status_code}")
        return CommandResult.ok()
