"""
Rate limiter and the per-app engine objects.

The completion gate and leaderboard projector are built once in create_app()
(after the achievement catalog has been validated) and stored on
app.extensions so blueprints never reload the catalog.
"""

from __future__ import annotations

from flask import Flask, current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from achievements import AchievementDefinition
from completion import ActivityCompletionGate
from leaderboard import LeaderboardProjector


def _rate_limit_key() -> str:
    """Limit per upstream identity when present, else per client address."""
    user_id = request.headers.get("X-User-Id", "").strip()
    return f"user:{user_id}" if user_id else get_remote_address()


limiter = Limiter(key_func=_rate_limit_key, default_limits=["200 per hour"])


class EngineManager:
    """Accessors for the engine objects attached to the current app."""

    KEY = "progression"

    @classmethod
    def init_app(cls, app: Flask, catalog: list[AchievementDefinition]) -> None:
        app.extensions[cls.KEY] = {
            "catalog": catalog,
            "gate": ActivityCompletionGate(
                catalog,
                duplicate_window_seconds=app.config.get("DUPLICATE_WINDOW_SECONDS", 120),
            ),
            "leaderboard": LeaderboardProjector(
                cache_ttl=app.config.get("LEADERBOARD_CACHE_TTL", 30),
                retention_days=app.config.get("RANK_SNAPSHOT_RETENTION_DAYS", 30),
            ),
        }

    @classmethod
    def get_gate(cls) -> ActivityCompletionGate:
        return current_app.extensions[cls.KEY]["gate"]

    @classmethod
    def get_leaderboard(cls) -> LeaderboardProjector:
        return current_app.extensions[cls.KEY]["leaderboard"]

    @classmethod
    def get_catalog(cls) -> list[AchievementDefinition]:
        return current_app.extensions[cls.KEY]["catalog"]
