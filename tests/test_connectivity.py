"""Tests for connectivity.py: ConnectionMonitor state and listeners."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

from connectivity import ConnectionMonitor, always_online


class TestConnectionMonitor:
    def test_callable_reports_state(self):
        monitor = ConnectionMonitor(online=False)
        assert monitor() is False
        monitor.set_online(True)
        assert monitor() is True
        assert monitor.is_online is True

    def test_always_online(self):
        assert always_online() is True

    def test_listeners_notified_on_change_only(self):
        monitor = ConnectionMonitor()
        events = []
        monitor.add_listener(events.append)
        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)
        assert events == [False, True]

    def test_listener_registered_once(self):
        monitor = ConnectionMonitor()
        events = []
        monitor.add_listener(events.append)
        monitor.add_listener(events.append)
        monitor.set_online(False)
        assert events == [False]

    def test_remove_listener(self):
        monitor = ConnectionMonitor()
        events = []
        monitor.add_listener(events.append)
        monitor.remove_listener(events.append)
        monitor.remove_listener(events.append)
        monitor.set_online(False)
        assert events == []

    def test_listener_error_logged_not_raised(self, caplog):
        monitor = ConnectionMonitor()
        events = []

        def broken(online):
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(events.append)
        with caplog.at_level(logging.ERROR, logger="connectivity"):
            monitor.set_online(False)
        assert events == [False]
        assert "Error in connection status listener" in caplog.text

    def test_probe_uses_health_check(self):
        monitor = ConnectionMonitor()
        client = MagicMock()
        client.is_available.return_value = False
        assert monitor.probe(client) is False
        assert monitor.is_online is False
        client.is_available.return_value = True
        assert monitor.probe(client) is True

    def test_destroy_drops_listeners(self):
        monitor = ConnectionMonitor()
        events = []
        monitor.add_listener(events.append)
        monitor.destroy()
        monitor.set_online(False)
        assert events == []

    def test_offline_client_without_monitor(self, store):
        from config import ClientConfig
        from remote_client import RemoteClient

        client = RemoteClient(ClientConfig(base_url="http://scores.test"), store=store, connectivity=lambda: False)
        try:
            assert client.save_score("user-1", "p1", 1, 1, 2).queued is True
        finally:
            client.close()
