"""Online/offline state, injected wherever a component needs to know it.

A ConnectionMonitor is callable, so anything expecting a
``Callable[[], bool]`` connectivity check accepts either a monitor or a
plain function such as ``lambda: False``.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from remote_client import RemoteClient

logger = logging.getLogger(__name__)

Connectivity = Callable[[], bool]


def always_online() -> bool:
    return True


class ConnectionMonitor:
    """Tracks connectivity and notifies listeners on transitions."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []
        self._lock = threading.Lock()

    def __call__(self) -> bool:
        return self.is_online

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        with self._lock:
            changed = online != self._online
            self._online = online
            listeners = list(self._listeners)
        if not changed:
            return
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Error in connection status listener")

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def probe(self, client: RemoteClient) -> bool:
        """Set state from a health check against the scores API."""
        online = client.is_available()
        self.set_online(online)
        return online

    def destroy(self) -> None:
        with self._lock:
            self._listeners.clear()
