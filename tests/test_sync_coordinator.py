"""Tests for sync_coordinator.py: remote-wins merge, atomic apply, in-progress guard."""

from __future__ import annotations

import json
import threading

import httpx
import pytest

from conftest import json_response
from errors import SYNC_IN_PROGRESS
from models import SyncResult
from sync_coordinator import SyncState, merge_marks


def _sync_handler(server_marks, seen=None, conflicts=(), synced=0):
    def handler(request):
        body = json.loads(request.content) if request.content else None
        if seen is not None:
            seen.append((request.url.path, body))
        if request.url.path == "/api/sync":
            return json_response(200, {
                "serverMarks": server_marks,
                "conflicts": list(conflicts),
                "synced": synced,
            })
        return json_response(201, body or {})

    return handler


class TestMergeMarks:
    def test_server_wins_on_shared_keys(self):
        assert merge_marks({"a": 1, "b": 2}, {"b": 5, "c": 3}) == {"a": 1, "b": 5, "c": 3}

    def test_local_only_keys_survive(self):
        assert merge_marks({"only-local": 7}, {}) == {"only-local": 7}

    @pytest.mark.parametrize("local,server", [
        ({}, {}),
        ({"x": 1}, {"x": 1}),
        ({"x": 1, "y": 2}, {"y": 0}),
        ({}, {"z": 4}),
    ])
    def test_every_server_key_present_with_server_value(self, local, server):
        merged = merge_marks(local, server)
        assert set(merged) == set(local) | set(server)
        for key, value in server.items():
            assert merged[key] == value

    def test_inputs_not_mutated(self):
        local, server = {"a": 1}, {"a": 2}
        merge_marks(local, server)
        assert local == {"a": 1}
        assert server == {"a": 2}


class TestSyncState:
    def test_begin_and_end(self):
        state = SyncState()
        assert state.begin(force=False) is True
        assert state.syncing is True
        assert state.begin(force=False) is False
        assert state.begin(force=True) is True
        state.end()
        assert state.syncing is False


class TestSyncData:
    def test_remote_wins_merge_and_last_sync(self, make_client, store, clock):
        store.set_user_marks({"p1-1": 5})
        client = make_client(_sync_handler({"p1-1": 9, "p1-2": 3}, conflicts=[{"key": "p1-1"}]))

        result = client.sync_data("user-1")

        assert result.success is True
        assert store.get_user_marks() == {"p1-1": 9, "p1-2": 3}
        assert store.get_last_sync_time() == clock.now
        assert isinstance(result.data, SyncResult)
        assert result.data.conflicts == 1
        assert result.data.errors == 0
        assert result.data.last_sync == "2026-01-15T10:00:00.000Z"

    def test_request_payload(self, make_client, store, clock):
        seen = []
        store.set_user_marks({"p1-1": 5})
        store.set_last_sync_time(clock.now)
        clock.advance(1500)
        client = make_client(_sync_handler({}, seen))

        client.sync_data("user-1")

        path, body = seen[0]
        assert path == "/api/sync"
        assert body == {
            "userId": "user-1",
            "localMarks": {"p1-1": 5},
            "lastSync": "2026-01-15T10:00:00.000Z",
            "timestamp": "2026-01-15T10:00:01.500Z",
        }

    def test_first_sync_sends_null_last_sync(self, make_client):
        seen = []
        client = make_client(_sync_handler({}, seen))
        client.sync_data("user-1")
        assert seen[0][1]["lastSync"] is None

    def test_failure_leaves_store_untouched(self, make_client, store):
        store.set_user_marks({"p1-1": 5})
        client = make_client(lambda request: httpx.Response(500), retries=0)
        result = client.sync_data("user-1")
        assert result.success is False
        assert result.code == "HTTP_500"
        assert store.get_user_marks() == {"p1-1": 5}
        assert store.get_last_sync_time() is None

    @pytest.mark.parametrize("body", [
        [],
        {"conflicts": []},
        {"serverMarks": [1, 2]},
        {"serverMarks": {}, "conflicts": "none"},
        {"serverMarks": {}, "synced": "3"},
    ])
    def test_malformed_response_rejected(self, make_client, store, body):
        store.set_user_marks({"p1-1": 5})
        client = make_client(lambda request: json_response(200, body))
        result = client.sync_data("user-1")
        assert result.success is False
        assert result.code == "INVALID_RESPONSE"
        assert store.get_user_marks() == {"p1-1": 5}
        assert store.get_last_sync_time() is None

    def test_sync_invalidates_cached_reads(self, make_client, store):
        store.set_cache("user-scores-user-1", [1])
        client = make_client(_sync_handler({}))
        client.sync_data("user-1")
        assert store.get_cache("user-scores-user-1") is None

    def test_flag_cleared_after_failure(self, make_client):
        client = make_client(lambda request: httpx.Response(500), retries=0)
        client.sync_data("user-1")
        assert client.sync.in_progress is False

    def test_flag_cleared_after_exception(self, make_client, store, monkeypatch):
        client = make_client(_sync_handler({}))

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(store, "apply_sync", broken)
        with pytest.raises(OSError):
            client.sync_data("user-1")
        assert client.sync.in_progress is False

    def test_drains_queue_when_online(self, make_client, store):
        seen = []
        client = make_client(_sync_handler({}, seen))
        client.offline_queue.save_score_offline("user-1", "p1", 1, 2, 5)
        client.sync_data("user-1")
        assert [path for path, _ in seen] == ["/api/sync", "/api/scores"]
        assert store.get_offline_queue() == []

    def test_drain_failure_does_not_fail_sync(self, make_client, store, monkeypatch):
        client = make_client(_sync_handler({"p1-1": 1}))

        def broken(*args, **kwargs):
            raise RuntimeError("queue exploded")

        monkeypatch.setattr(client.offline_queue, "process_offline_queue", broken)
        result = client.sync_data("user-1")
        assert result.success is True
        assert store.get_user_marks() == {"p1-1": 1}

    def test_rejects_missing_user_id(self, make_client):
        from errors import ValidationError

        client = make_client(_sync_handler({}))
        with pytest.raises(ValidationError):
            client.sync_data("")


class TestOverlappingSyncs:
    def _blocking_client(self, make_client):
        entered = threading.Event()
        release = threading.Event()
        syncs = []

        def handler(request):
            if request.url.path == "/api/sync":
                syncs.append(1)
                if len(syncs) == 1:
                    entered.set()
                    release.wait(timeout=5)
                return json_response(200, {"serverMarks": {"p1-1": 9}, "conflicts": [], "synced": 0})
            return json_response(201, {})

        return make_client(handler), entered, release

    def test_second_call_rejected_then_third_succeeds(self, make_client):
        client, entered, release = self._blocking_client(make_client)
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault("first", client.sync_data("user-1")))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            assert client.sync.in_progress is True
            second = client.sync_data("user-1")
        finally:
            release.set()
            worker.join(timeout=5)

        assert second.success is False
        assert second.code == SYNC_IN_PROGRESS
        assert results["first"].success is True
        assert client.sync.in_progress is False
        assert client.sync_data("user-1").success is True

    def test_force_bypasses_guard(self, make_client):
        client, entered, release = self._blocking_client(make_client)
        results = {}

        worker = threading.Thread(target=lambda: results.setdefault("first", client.sync_data("user-1")))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            forced = client.sync_data("user-1", force=True)
        finally:
            release.set()
            worker.join(timeout=5)

        assert forced.success is True
        assert client.sync.in_progress is False

    def test_guard_is_per_client(self, make_client):
        client_a, entered, release = self._blocking_client(make_client)
        client_b = make_client(_sync_handler({}))

        worker = threading.Thread(target=client_a.sync_data, args=("user-1",))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            other = client_b.sync_data("user-2")
        finally:
            release.set()
            worker.join(timeout=5)

        assert other.success is True
