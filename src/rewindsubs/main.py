"""Process entry point: wire settings, Plex client, worker and notification listener."""

import argparse
import asyncio
import logging
import signal

import rewindsubs
from rewindsubs.application.workers import create_session_monitor_worker
from rewindsubs.config import Settings, get_settings
from rewindsubs.infrastructure.integrations import PlexClient, PlexNotificationListener
from rewindsubs.infrastructure.observability import configure_logging

logger = logging.getLogger(__name__)


async def run(settings: Settings) -> None:
    """Run the monitor (and the notification listener if enabled) until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: Ctrl+C still arrives as KeyboardInterrupt via asyncio.run
            pass

    logger.info("Using Plex server at %s", settings.plex.url)

    async with PlexClient(settings.plex) as client:
        worker = create_session_monitor_worker(settings, client)
        listener: PlexNotificationListener | None = None
        tasks = [asyncio.create_task(worker.start(), name="session-monitor")]

        if settings.monitor.use_event_polling:
            listener = PlexNotificationListener(settings.plex, worker.handle_playing_notification)
            tasks.append(asyncio.create_task(listener.run(), name="plex-notifications"))

        try:
            await stop_event.wait()
        finally:
            logger.info("Shutting down")
            if listener is not None:
                await listener.stop()
            await worker.stop()
            await asyncio.gather(*tasks, return_exceptions=True)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rewindsubs",
        description="Show subtitles on Plex players while re-watching a rewound scene.",
    )
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    parser.add_argument("--version", action="store_true")
    args = parser.parse_args(argv)

    if args.version:
        print(f"rewindsubs {rewindsubs.__version__}")
        return 0

    settings = get_settings()
    configure_logging(
        log_level="DEBUG" if args.debug else settings.observability.level,
        json_format=settings.observability.json_format,
        app_name=settings.app_name,
    )

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0
