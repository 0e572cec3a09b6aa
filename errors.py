"""
Error taxonomy for the progression engine and its JSON error handlers.

Duplicate and daily-cap outcomes are not errors: they are reported through
CompletionResult.outcome.
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

logger = logging.getLogger(__name__)


class ProgressionError(Exception):
    """Base class for engine errors."""


class ValidationError(ProgressionError):
    """Malformed input. Not retriable without correction."""


class PersistenceFailure(ProgressionError):
    """Storage I/O fault. Safe to retry the whole operation."""


class ConfigurationError(ProgressionError):
    """Malformed static configuration, raised before any request is served."""


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def _validation_error(exc: ValidationError):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(PersistenceFailure)
    def _persistence_failure(exc: PersistenceFailure):
        logger.warning("persistence failure: %s", exc)
        response = jsonify({"error": "Storage temporarily unavailable, please retry."})
        response.status_code = 503
        response.headers["Retry-After"] = "1"
        return response
