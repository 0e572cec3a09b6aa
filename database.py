"""
SQLite database layer for the progression engine.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations.

Connections run in autocommit mode; every mutation goes through
``transaction()``, which opens ``BEGIN IMMEDIATE`` so concurrent writers are
serialised by SQLite's reserved lock rather than by application code.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from flask import current_app, g
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from errors import PersistenceFailure

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "progression.db"


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Users (mirror of the upstream identity provider)
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'student',
    created_at TEXT NOT NULL DEFAULT ''
);

-- Per-user XP / level / streak counters
CREATE TABLE IF NOT EXISTS user_stats (
    user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    total_xp INTEGER NOT NULL DEFAULT 0 CHECK (total_xp >= 0),
    level INTEGER NOT NULL DEFAULT 1,
    current_streak INTEGER NOT NULL DEFAULT 0,
    max_streak INTEGER NOT NULL DEFAULT 0,
    learning_streak INTEGER NOT NULL DEFAULT 0,
    last_active_date TEXT NOT NULL DEFAULT '',
    last_learning_date TEXT NOT NULL DEFAULT '',
    show_on_leaderboard INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_user_stats_leaderboard ON user_stats(show_on_leaderboard, total_xp DESC, user_id);

-- Progress records: one row per attempt (quizzes) or per content item (singletons)
CREATE TABLE IF NOT EXISTS progress_records (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    content_id TEXT NOT NULL,
    content_type TEXT NOT NULL,
    activity_variant TEXT NOT NULL DEFAULT '',
    dedupe_key TEXT NOT NULL,
    singleton_key TEXT UNIQUE,
    completed INTEGER NOT NULL DEFAULT 0,
    score REAL,
    attempts INTEGER NOT NULL DEFAULT 0,
    time_spent INTEGER NOT NULL DEFAULT 0,
    last_accessed TEXT NOT NULL,
    sessions TEXT NOT NULL DEFAULT '[]',
    first_completed_date TEXT NOT NULL DEFAULT '',
    total_xp_earned INTEGER NOT NULL DEFAULT 0,
    outcome TEXT NOT NULL DEFAULT 'recorded',
    data TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_progress_user_dedupe ON progress_records(user_id, dedupe_key, last_accessed);
CREATE INDEX IF NOT EXISTS idx_progress_user_type ON progress_records(user_id, content_type);

-- Paid XP awards; the unique key enforces daily / once-per-content caps
CREATE TABLE IF NOT EXISTS xp_awards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    award_key TEXT NOT NULL,
    activity_variant TEXT NOT NULL,
    award_day TEXT NOT NULL,
    submission_id TEXT NOT NULL,
    xp INTEGER NOT NULL,
    performance_bonus INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, award_key)
);

-- Achievement unlocks (append-only)
CREATE TABLE IF NOT EXISTS achievement_unlocks (
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    achievement_id TEXT NOT NULL,
    xp_reward INTEGER NOT NULL DEFAULT 0,
    unlocked_at TEXT NOT NULL,
    PRIMARY KEY (user_id, achievement_id)
);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Version 1 = base schema.
    # -----------------------------------------------------------
    # Migration 2: Daily rank snapshots + audit log
    (2, """
        CREATE TABLE IF NOT EXISTS rank_snapshots (
            snapshot_date TEXT NOT NULL,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            rank INTEGER NOT NULL,
            total_xp INTEGER NOT NULL,
            level INTEGER NOT NULL,
            PRIMARY KEY (snapshot_date, user_id)
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            action TEXT NOT NULL,
            detail TEXT NOT NULL DEFAULT '',
            ip_address TEXT NOT NULL DEFAULT '',
            user_agent TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id, created_at);
    """),
    # Migration 3: Signed administrative XP corrections
    (3, """
        CREATE TABLE IF NOT EXISTS xp_adjustments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            delta INTEGER NOT NULL,
            reason TEXT NOT NULL DEFAULT '',
            actor_id TEXT NOT NULL DEFAULT '',
            total_after INTEGER NOT NULL,
            created_at TEXT NOT NULL
        );
    """),
]


def get_db() -> sqlite3.Connection:
    """Return a DB connection from Flask g, creating if needed."""
    if "db" not in g:
        db_url = current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))
        g.db = sqlite3.connect(db_url, timeout=5.0, isolation_level=None)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def close_db(e=None) -> None:
    """Teardown handler: close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def _is_lock_contention(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


@retry(
    retry=retry_if_exception(_is_lock_contention),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    stop=stop_after_attempt(5),
    reraise=True,
)
def _begin_immediate(db: sqlite3.Connection) -> None:
    db.execute("BEGIN IMMEDIATE")


def _rollback(db: sqlite3.Connection) -> None:
    if db.in_transaction:
        try:
            db.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("rollback failed")


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one write transaction.

    Nested calls join the outer transaction. Any exception rolls back every
    write made inside the outermost block; sqlite errors are re-raised as
    PersistenceFailure.
    """
    db = get_db()
    if db.in_transaction:
        yield db
        return

    try:
        _begin_immediate(db)
    except sqlite3.Error as exc:
        raise PersistenceFailure(f"could not start transaction: {exc}") from exc

    try:
        yield db
        db.execute("COMMIT")
    except sqlite3.Error as exc:
        _rollback(db)
        raise PersistenceFailure(str(exc)) from exc
    except BaseException:
        _rollback(db)
        raise


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    row = db.execute("SELECT version FROM schema_version WHERE version = 1").fetchone()
    if not row:
        db.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (1, ?)",
            (datetime.now().isoformat(),),
        )


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    db_url = current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))
    lock_file = None

    if db_url != ":memory:":
        lock_path = Path(db_url).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version not in applied:
                try:
                    db.executescript(sql)
                except sqlite3.OperationalError as e:
                    err_msg = str(e).lower()
                    if "duplicate column" not in err_msg and "already exists" not in err_msg:
                        raise
                db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now().isoformat()),
                )
                logger.info("applied migration %d", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            app._db_initialized = True
