"""
Test fixtures for the progression engine.

Provides app, client, user_client, admin_client and db fixtures with
file-based SQLite, plus helpers for building completion gates over a
custom achievement catalog.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

USER_HEADERS = {"X-User-Id": "learner-1", "X-User-Name": "Ada Lovelace", "X-User-Role": "student"}
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Name": "Grace Hopper", "X-User-Role": "admin"}


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "CRON_SECRET": "cron-test-secret",
        "LEADERBOARD_CACHE_TTL": 0,
    })

    yield app


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


class _HeaderClient:
    """Test client that sends gateway identity headers on every request."""

    def __init__(self, client, headers):
        self._client = client
        self.headers = headers

    def _merge(self, kwargs):
        kwargs["headers"] = {**self.headers, **kwargs.get("headers", {})}
        return kwargs

    def get(self, *args, **kwargs):
        return self._client.get(*args, **self._merge(kwargs))

    def post(self, *args, **kwargs):
        return self._client.post(*args, **self._merge(kwargs))

    def put(self, *args, **kwargs):
        return self._client.put(*args, **self._merge(kwargs))


@pytest.fixture
def user_client(app):
    """Client authenticated as a student through gateway headers."""
    return _HeaderClient(app.test_client(), USER_HEADERS)


@pytest.fixture
def admin_client(app):
    """Client authenticated as an admin through gateway headers."""
    return _HeaderClient(app.test_client(), ADMIN_HEADERS)


@pytest.fixture
def db(app):
    """Direct database access inside an app context, for engine and store tests.

    API tests should not combine this with client requests: requests would
    share its app context (and the cached login user on g).
    """
    from database import get_db

    with app.app_context():
        yield get_db()


def at(year, month, day, hour=12, minute=0, second=0):
    """Aware UTC datetime shorthand."""
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def xp_gate_catalog(threshold=100, reward=0):
    """Single-achievement catalog unlocked once total_xp reaches ``threshold``."""
    from achievements import AchievementDefinition
    return [
        AchievementDefinition(
            id="century",
            name="Century",
            rarity="common",
            xp_reward=reward,
            predicate=lambda s: s.total_xp >= threshold,
        )
    ]


@pytest.fixture
def gate(db):
    """Completion gate over an empty catalog."""
    from completion import ActivityCompletionGate
    return ActivityCompletionGate([])


def quiz(user_id="learner-1", score=92, when=None, variant="timed_quiz", content_id="quiz-1", **extra):
    event = {
        "userId": user_id,
        "contentId": content_id,
        "contentType": "quiz",
        "activityVariant": variant,
        "score": score,
        "timeSpent": 60,
        "timestamp": (when or at(2026, 3, 2)).isoformat(),
    }
    event.update(extra)
    return event
