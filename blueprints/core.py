"""Health checks."""

from __future__ import annotations

import logging
import sqlite3
import time

from flask import Blueprint, jsonify

from database import get_db

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)

_start_time = time.time()


@bp.route("/health")
def health():
    uptime = int(time.time() - _start_time)
    return jsonify({"status": "ok", "uptime_seconds": uptime})


@bp.route("/ready")
def ready():
    try:
        get_db().execute("SELECT 1").fetchone()
    except sqlite3.Error as exc:
        logger.error("Readiness check failed: %s", exc, exc_info=True)
        return jsonify({"status": "not_ready"}), 503
    return jsonify({"status": "ready"}), 200
