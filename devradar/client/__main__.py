"""
Headless agent: ``python -m devradar.client``.

Connects with ``DEVRADAR_TOKEN``, reports ``online``, posts a session report
every ``DEVRADAR_SESSION_REPORT_INTERVAL_SECONDS`` while online and logs
whatever the server pushes until interrupted.
"""

import asyncio
import json
import logging

import httpx

from devradar.client.api import StatsApiError, StatsClient
from devradar.client.config import ClientSettings
from devradar.client.connection import ConnectionManager
from devradar.client.tracker import ActivityTracker
from devradar.core.logging import configure_logging, get_logger


async def report_sessions(tracker: ActivityTracker, stats: StatsClient, interval: float, logger: logging.Logger) -> None:
    last = tracker.clock()
    while tracker.tracking:
        await asyncio.sleep(interval)
        now = tracker.clock()
        seconds, last = int(now - last), now
        if tracker.status != "online" or seconds <= 0:
            continue
        try:
            await stats.report_session(seconds, language=tracker.editor.language, project=tracker.editor.project)
        except (httpx.HTTPError, StatsApiError) as e:
            logger.warning(f"session report failed: {e}")


async def run(settings: ClientSettings) -> None:
    logger = get_logger("client")
    manager = ConnectionManager(
        settings,
        on_message=lambda message: logger.info(json.dumps(message)),
        on_state_change=lambda state: logger.info(f"connection {state}"),
        on_failure=lambda: logger.error("Unable to connect to server. Please check your connection."),
        on_credential_rejected=lambda code: logger.error(f"Token rejected by server ({code})"),
        logger=logger,
    )
    tracker = ActivityTracker(settings, manager.send_status_update, logger=get_logger("client.tracker"))
    stats = StatsClient(settings, logger=get_logger("client.api"))
    await manager.connect()
    await tracker.start()
    reporter = asyncio.create_task(
        report_sessions(tracker, stats, settings.session_report_interval_seconds, logger)
    )
    try:
        await asyncio.Event().wait()
    finally:
        reporter.cancel()
        await tracker.stop()
        await manager.flush()
        await manager.close()


def main() -> None:
    configure_logging("development")
    logging.getLogger("devradar").setLevel(logging.INFO)
    try:
        asyncio.run(run(ClientSettings()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
