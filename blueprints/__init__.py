"""
Blueprint registration for the scores API.

All routes carry their full /api/... path, so blueprints register without prefixes.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.api import bp as api_bp

    app.register_blueprint(api_bp)
