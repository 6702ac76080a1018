"""Plex real-time notification listener (websocket).

Hey future me - Plex pushes a "playing" notification over its websocket every
time a player reports progress, pauses, seeks, etc. That is much faster than
our 1s polling for noticing a rewind, so each one triggers an extra monitoring
pass for the matching session (see SessionMonitorWorker.handle_playing_notification).

Message shape (everything else on the socket is ignored):

    {"NotificationContainer": {
        "type": "playing",
        "size": 1,
        "PlaySessionStateNotification": [
            {"sessionKey": "12", "clientIdentifier": "abc123", "key": "/library/metadata/20884",
             "ratingKey": "20884", "viewOffset": 1234567, "state": "playing"}
        ]}}

The connection WILL drop (server restart, network blip). run() just reconnects
after reconnect_delay until stop() is called - polling keeps working meanwhile.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import WebSocketException

from rewindsubs.config.settings import PlexSettings
from rewindsubs.domain.entities import PlayingNotification

logger = logging.getLogger(__name__)

NOTIFICATIONS_PATH = "/:/websockets/notifications"
PLAYING_TYPE = "playing"

NotificationCallback = Callable[[PlayingNotification], Awaitable[Any]]


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_playing_notifications(message: str | bytes) -> list[PlayingNotification]:
    """Extract PlayingNotifications from one websocket message.

    Non-JSON messages and other notification types yield an empty list.
    """
    try:
        data = json.loads(message)
    except ValueError:
        logger.debug("Ignoring non-JSON notification message")
        return []

    if not isinstance(data, dict):
        return []
    container = data.get("NotificationContainer")
    if not isinstance(container, dict) or container.get("type") != PLAYING_TYPE:
        return []

    notifications: list[PlayingNotification] = []
    for entry in container.get("PlaySessionStateNotification") or []:
        if not isinstance(entry, dict):
            continue
        client_identifier = entry.get("clientIdentifier")
        if not client_identifier:
            continue
        notifications.append(
            PlayingNotification(
                session_key=str(entry.get("sessionKey", "")),
                client_identifier=str(client_identifier),
                state=str(entry.get("state", "")),
                view_offset_ms=_optional_int(entry.get("viewOffset")),
                rating_key=str(entry.get("ratingKey", "")),
                key=str(entry.get("key", "")),
            )
        )
    return notifications


class PlexNotificationListener:
    """Keeps a websocket open to Plex and forwards playing notifications to a callback."""

    def __init__(
        self,
        settings: PlexSettings,
        callback: NotificationCallback,
        reconnect_delay: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        """Initialize the listener.

        Args:
            settings: Plex connection settings (URL and token)
            callback: Awaited once per PlayingNotification
            reconnect_delay: Seconds to wait before reconnecting after a drop
            connect: websockets.connect (injectable for tests)
        """
        self.settings = settings
        self._callback = callback
        self._reconnect_delay = reconnect_delay
        self._connect = connect
        self._running = False
        self._websocket: Any = None
        self._wake_event = asyncio.Event()
        self._notifications_received = 0
        self._connections = 0

    @property
    def websocket_url(self) -> str:
        parts = urlsplit(self.settings.url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        query = urlencode({"X-Plex-Token": self.settings.token}) if self.settings.token else ""
        return urlunsplit((scheme, parts.netloc, NOTIFICATIONS_PATH, query, ""))

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Listen until stop() is called, reconnecting on connection errors."""
        self._running = True
        self._wake_event.clear()
        logger.info("PlexNotificationListener started")

        while self._running:
            try:
                await self._listen_once()
            except (OSError, WebSocketException) as e:
                if self._running:
                    logger.warning(
                        "Notification connection lost: %s (reconnecting in %ss)",
                        e,
                        self._reconnect_delay,
                    )

            if self._running:
                await self._sleep(self._reconnect_delay)

        logger.info("PlexNotificationListener stopped")

    async def stop(self) -> None:
        self._running = False
        self._wake_event.set()
        if self._websocket is not None:
            await self._websocket.close()

    async def _listen_once(self) -> None:
        async with self._connect(self.websocket_url) as websocket:
            self._websocket = websocket
            self._connections += 1
            logger.info("Connected to Plex notifications")
            try:
                async for message in websocket:
                    await self.handle_message(message)
                    if not self._running:
                        break
            finally:
                self._websocket = None

    async def handle_message(self, message: str | bytes) -> int:
        """Forward every playing notification in a message. Returns how many were forwarded."""
        notifications = parse_playing_notifications(message)
        for notification in notifications:
            self._notifications_received += 1
            try:
                await self._callback(notification)
            except Exception as e:
                logger.exception(
                    "Handling playing notification for %s failed: %s",
                    notification.client_identifier,
                    e,
                )
        return len(notifications)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=seconds)
        except TimeoutError:
            pass
        self._wake_event.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "connected": self._websocket is not None,
            "connections": self._connections,
            "notifications_received": self._notifications_received,
        }
