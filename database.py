"""
SQLite persistence for the reference scores API.

One connection per application context, kept on flask.g. Schema DDL is
idempotent; later changes go in MIGRATIONS and are recorded in
schema_version so each runs once.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, current_app, g

DEFAULT_DATABASE = str(Path(__file__).parent / "scores.db")


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- One row per (user, paper, question); re-scoring overwrites in place
CREATE TABLE IF NOT EXISTS scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    paper_id TEXT NOT NULL,
    question_id TEXT NOT NULL,
    score INTEGER NOT NULL DEFAULT 0,
    max_score INTEGER,
    timestamp TEXT NOT NULL DEFAULT '',
    last_modified TEXT,
    UNIQUE (user_id, paper_id, question_id)
);
CREATE INDEX IF NOT EXISTS idx_scores_user_paper ON scores(user_id, paper_id);
"""

# (version, sql) applied in order on top of SCHEMA
MIGRATIONS: list[tuple[int, str]] = [
    (1, "CREATE INDEX IF NOT EXISTS idx_scores_user_timestamp ON scores(user_id, timestamp);"),
    # question_id is TEXT; remember which ids the client sent as integers
    (2, "ALTER TABLE scores ADD COLUMN question_is_int INTEGER NOT NULL DEFAULT 0;"),
]


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def get_db() -> sqlite3.Connection:
    """Connection for the current app context, opened on first use."""
    if "db" not in g:
        g.db = connect(current_app.config.get("DATABASE", DEFAULT_DATABASE))
    return g.db


def close_db(e=None) -> None:
    conn = g.pop("db", None)
    if conn is not None:
        conn.close()


def init_db() -> None:
    """Create tables and indexes if they do not exist."""
    conn = get_db()
    conn.executescript(SCHEMA)
    conn.commit()


def run_migrations() -> None:
    conn = get_db()
    applied = {row["version"] for row in conn.execute("SELECT version FROM schema_version")}
    for version, sql in MIGRATIONS:
        if version in applied:
            continue
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()


def init_app(app: Flask) -> None:
    """Close connections on teardown; create the schema before the first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_schema():
        if app.extensions.get("scores_db_ready"):
            return
        init_db()
        run_migrations()
        app.extensions["scores_db_ready"] = True
