"""
Background sync scheduling for a client process.

Jobs:
  - Score sync for the stored user (every SYNC_INTERVAL_SECONDS)
Listeners:
  - Offline queue drain when connectivity comes back

Usage:
    python3 scheduler.py [user_id]
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from models import ApiResponse

if TYPE_CHECKING:
    from connectivity import ConnectionMonitor
    from remote_client import RemoteClient

logger = logging.getLogger(__name__)


def run_scheduled_sync(client: RemoteClient) -> Optional[ApiResponse]:
    """One scheduled sync pass. Skipped when offline or no user is stored."""
    if not client.connectivity():
        logger.debug("Scheduled sync skipped: offline")
        return None
    user_id = client.store.get_user_id()
    if not user_id:
        logger.debug("Scheduled sync skipped: no user id stored")
        return None
    result = client.sync_data(user_id)
    if not result.success:
        logger.info("Scheduled sync for %s did not complete: %s", user_id, result.code)
    return result


def init_scheduler(client: RemoteClient, interval_seconds: int = 300, start: bool = True) -> BackgroundScheduler:
    """Register the periodic sync job and (by default) start the scheduler."""
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_scheduled_sync,
        args=[client],
        trigger="interval",
        seconds=interval_seconds,
        id="score_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if start:
        scheduler.start()
        logger.info("Sync scheduler started (every %ds)", interval_seconds)
    return scheduler


def watch_connectivity(client: RemoteClient, monitor: ConnectionMonitor) -> Callable[[bool], None]:
    """Drain the stored user's offline queue whenever the monitor goes online.

    Returns the registered listener so callers can remove it.
    """

    def _on_change(online: bool) -> None:
        if not online:
            return
        user_id = client.store.get_user_id()
        if user_id:
            client.process_offline_queue(user_id)

    monitor.add_listener(_on_change)
    return _on_change


def main() -> None:
    """Run a background sync process for the user stored locally."""
    import time

    from config import SYNC_INTERVAL_SECONDS, ClientConfig
    from connectivity import ConnectionMonitor
    from local_store import create_local_store
    from logging_config import configure_logging
    from remote_client import initialize_api_client

    configure_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "text"))
    monitor = ConnectionMonitor()
    client = initialize_api_client(ClientConfig.from_env(), store=create_local_store(), connectivity=monitor)
    if len(sys.argv) > 1:
        client.store.set_user_id(sys.argv[1])

    monitor.probe(client)
    watch_connectivity(client, monitor)
    scheduler = init_scheduler(client, SYNC_INTERVAL_SECONDS)
    try:
        while True:
            time.sleep(SYNC_INTERVAL_SECONDS)
            monitor.probe(client)
    except KeyboardInterrupt:
        logger.info("Shutting down sync scheduler")
    finally:
        scheduler.shutdown(wait=False)
        client.close()


if __name__ == "__main__":
    main()
