"""
Scores API: Flask web application

Reference backend for the score sync client: stores per-question marks,
answers sync requests and serves export/import and stats.

Usage:
    FLASK_ENV=development python3 app.py
"""

from __future__ import annotations

import hashlib
import os
from typing import Any

from flask import Flask, Response, jsonify, request as flask_request
from werkzeug.exceptions import HTTPException

import database
from blueprints import register_blueprints
from extensions import limiter

ETAG_MAX_BYTES = 1_048_576


def _load_config(app: Flask, overrides: dict[str, Any] | None) -> None:
    from config import TestingConfig, config_by_name

    if overrides is not None:
        app.config.from_object(TestingConfig)
        app.config.update(overrides)
        return
    cfg = config_by_name.get(os.environ.get("FLASK_ENV", "development"), config_by_name["development"])
    app.config.from_object(cfg)
    if hasattr(cfg, "validate"):
        cfg.validate()


def _register_error_handlers(app: Flask) -> None:
    # Every error leaves as {message, code}
    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"message": e.description, "code": f"HTTP_{e.code}"}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        app.logger.exception("Unhandled error on %s %s", flask_request.method, flask_request.path)
        return jsonify({"message": "Internal server error", "code": "HTTP_500"}), 500


def _register_response_hooks(app: Flask) -> None:
    @app.after_request
    def no_store(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    # Conditional GET for score lists and stats
    @app.after_request
    def etag(response: Response) -> Response:
        if flask_request.method not in ("GET", "HEAD"):
            return response
        if response.status_code != 200 or not response.is_json:
            return response
        if not response.content_length or response.content_length >= ETAG_MAX_BYTES:
            return response
        tag = '"' + hashlib.md5(response.get_data()).hexdigest() + '"'
        response.headers["ETag"] = tag
        if flask_request.headers.get("If-None-Match") == tag:
            response.status_code = 304
            response.set_data(b"")
        return response


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    _load_config(app, test_config)

    from logging_config import init_logging
    init_logging(app)

    database.init_app(app)

    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    register_blueprints(app)
    _register_error_handlers(app)
    _register_response_hooks(app)
    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=int(os.environ.get("PORT", "5001")))
