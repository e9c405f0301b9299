"""
Test fixtures for the score sync client and the reference scores API.

Provides a controllable clock, an in-memory local store, a connection
monitor, the Flask app on a file-based SQLite database, and RemoteClient
factories over httpx.WSGITransport (real app) or httpx.MockTransport
(fault injection). Retry waits are recorded instead of slept.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import ClientConfig  # noqa: E402
from connectivity import ConnectionMonitor  # noqa: E402
from local_store import LocalStore  # noqa: E402
from remote_client import RemoteClient  # noqa: E402
from storage_backend import InMemoryBackend  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


def json_response(status: int = 200, body=None) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    return httpx.Response(status, content=json.dumps(body).encode(),
                          headers={"Content-Type": "application/json"})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return LocalStore(InMemoryBackend(), clock=clock)


@pytest.fixture
def monitor():
    return ConnectionMonitor(online=True)


@pytest.fixture
def sleeps():
    """Seconds each retry would have waited, in order."""
    return []


@pytest.fixture
def make_client(store, monitor, sleeps):
    """Build a RemoteClient whose requests go to ``handler``."""
    clients: list[RemoteClient] = []

    def _make(handler, **options) -> RemoteClient:
        config = ClientConfig(base_url="http://scores.test", **options)
        client = RemoteClient(
            config,
            store=store,
            connectivity=monitor,
            transport=httpx.MockTransport(handler),
            sleep=sleeps.append,
        )
        clients.append(client)
        return client

    yield _make
    for c in clients:
        c.close()


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "test.db"),
        "SECRET_KEY": "test-secret-key",
    })

    with app.app_context():
        from database import init_db, run_migrations
        init_db()
        run_migrations()

    yield app


@pytest.fixture
def client(app):
    """Flask test client for direct API tests."""
    return app.test_client()


@pytest.fixture
def api_client(app, store, monitor, sleeps):
    """RemoteClient talking to the Flask app in-process."""
    c = RemoteClient(
        ClientConfig(base_url="http://testserver"),
        store=store,
        connectivity=monitor,
        transport=httpx.WSGITransport(app=app),
        sleep=sleeps.append,
    )
    yield c
    c.close()


@pytest.fixture
def seeded_scores(app):
    """Seed server-side scores for user-1."""
    with app.app_context():
        from database import get_db
        db = get_db()
        rows = [
            ("user-1", "p1", "1", 1, 9, 10, "2026-01-10T09:00:00.000Z"),
            ("user-1", "p1", "2", 1, 3, 5, "2026-01-10T09:05:00.000Z"),
            ("user-1", "p2", "q1", 0, 4, 4, "2026-01-11T09:00:00.000Z"),
            ("user-2", "p1", "1", 1, 1, 10, "2026-01-12T09:00:00.000Z"),
        ]
        for r in rows:
            db.execute(
                "INSERT INTO scores (user_id, paper_id, question_id, question_is_int, score, max_score, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                r,
            )
        db.commit()
