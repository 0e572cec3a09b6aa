"""
Application configuration, environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigurationError

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # SQLite database file
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "progression.db"))

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (leaderboard cache + rate limit storage)
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"
    COMPLETION_RATE_LIMIT = os.environ.get("COMPLETION_RATE_LIMIT", "60 per minute")

    # Progression engine
    ACHIEVEMENT_CATALOG_PATH = os.environ.get(
        "ACHIEVEMENT_CATALOG_PATH", str(BASE_DIR / "data" / "achievements.json")
    )
    DUPLICATE_WINDOW_SECONDS = int(os.environ.get("DUPLICATE_WINDOW_SECONDS", "120"))

    # Leaderboard
    LEADERBOARD_DEFAULT_LIMIT = 50
    LEADERBOARD_MAX_LIMIT = 100
    LEADERBOARD_CACHE_TTL = int(os.environ.get("LEADERBOARD_CACHE_TTL", "30"))
    RANK_SNAPSHOT_RETENTION_DAYS = 30

    # Shared secret for the cron-driven rank snapshot endpoint
    CRON_SECRET = os.environ.get("CRON_SECRET", "")

    # Background jobs (rank snapshots, cache cleanup)
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if cls.DUPLICATE_WINDOW_SECONDS <= 0:
            errors.append("DUPLICATE_WINDOW_SECONDS must be positive.")

        if not cls.CRON_SECRET:
            warnings.warn("CRON_SECRET is not set; rank snapshots can only be triggered by admins.")

        if errors:
            raise ConfigurationError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    SCHEDULER_ENABLED = False
    LEADERBOARD_CACHE_TTL = 0


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
