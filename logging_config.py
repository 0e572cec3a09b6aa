"""Log setup: JSON lines in production, plain text locally, request-scoped ids."""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s %(user_id)s]: %(message)s"
QUIET_LOGGERS = ("werkzeug", "apscheduler")


class RequestContextFilter(logging.Filter):
    """Stamp request_id and user_id on every record; '-' outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            record.request_id = g.get("request_id", "-")
            record.user_id = request.headers.get("X-User-Id") or "-"
        else:
            record.request_id = record.user_id = "-"
        return True


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def init_logging(app: Flask) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if app.config.get("LOG_FORMAT") == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    @app.before_request
    def _start_request():
        # reuse the gateway's id when present
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        g.request_start = time.monotonic()

    @app.after_request
    def _access_log(response):
        elapsed = (time.monotonic() - g.get("request_start", time.monotonic())) * 1000
        app.logger.info("%s %s -> %d in %.0fms",
                        request.method, request.path, response.status_code, elapsed)
        response.headers["X-Request-Id"] = g.get("request_id", "-")
        return response
