"""
Progression Engine: Flask Web Application

JSON API over the XP ledger, streaks, achievements and leaderboard of the
learning platform. Identity comes from a trusted upstream gateway.
"""

from __future__ import annotations

import hashlib
import os
from typing import Any

from flask import Flask, Response, request as flask_request

import database
from achievements import load_catalog
from auth import login_manager
from blueprints import register_blueprints
from cache_backend import init_cache
from config import config_by_name
from errors import register_error_handlers
from extensions import EngineManager, limiter
from logging_config import init_logging


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Structured logging
    init_logging(app)

    # Achievement catalog is validated before anything is served
    catalog = load_catalog(app.config["ACHIEVEMENT_CATALOG_PATH"])
    EngineManager.init_app(app, catalog)

    # Cache backend (Redis or in-memory)
    init_cache(app)

    # Register database teardown and schema bootstrap
    database.init_app(app)
    with app.app_context():
        database.init_db()
        database.run_migrations()

    register_error_handlers(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    login_manager.init_app(app)

    register_blueprints(app)

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # ETag support for JSON GET responses
    @app.after_request
    def set_etag(response: Response) -> Response:
        if (
            flask_request.method == "GET"
            and response.status_code == 200
            and response.content_type
            and "application/json" in response.content_type
            and response.content_length
            and response.content_length < 1_048_576  # < 1 MB
        ):
            data = response.get_data()
            etag = '"' + hashlib.md5(data).hexdigest() + '"'
            response.headers["ETag"] = etag
            if_none_match = flask_request.headers.get("If-None-Match")
            if if_none_match and if_none_match == etag:
                response.status_code = 304
                response.set_data(b"")
        return response

    # Background jobs (rank snapshots, cache cleanup)
    if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
        from scheduler import init_scheduler
        app.extensions["scheduler"] = init_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
