"""
Structured logging for the sync client and the scores API.

configure_logging() sets up the root logger of any process (sync daemon,
scripts); init_logging() does the same from Flask config and adds
request ids and one access-log line per request. LOG_FORMAT=json emits
one JSON object per line, anything else a readable text line.
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, request

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "werkzeug")


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id is not None:
            entry["request_id"] = request_id
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def configure_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Replace the root logger's handlers with a single stream handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(_make_handler(log_format))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def init_logging(app: Flask) -> None:
    configure_logging(app.config.get("LOG_LEVEL", "INFO"), app.config.get("LOG_FORMAT", "text"))

    @app.before_request
    def _start_request():
        # Clients may pass X-Request-ID to correlate their own logs
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.request_start = time.monotonic()

    @app.after_request
    def _access_log(response):
        request_id = g.get("request_id", "-")
        elapsed_ms = (time.monotonic() - g.get("request_start", time.monotonic())) * 1000
        response.headers["X-Request-ID"] = request_id
        app.logger.info(
            "%s %s -> %d in %.0fms",
            request.method, request.path, response.status_code, elapsed_ms,
            extra={"request_id": request_id},
        )
        return response
