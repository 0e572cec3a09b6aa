"""Tests for database.py: schema creation, migrations, transactions."""

import sqlite3

import pytest

from database import MIGRATIONS, get_db, init_db, run_migrations, transaction
from errors import PersistenceFailure
from xp_ledger import XPLedger


class TestSchema:
    """Verify all tables are created correctly."""

    def test_tables_exist(self, db):
        tables = {r["name"] for r in db.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()}
        for t in ("schema_version", "users", "user_stats", "progress_records", "xp_awards",
                  "achievement_unlocks", "rank_snapshots", "audit_log", "xp_adjustments"):
            assert t in tables, f"Table {t} not found"

    def test_wal_mode(self, db):
        assert db.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_foreign_keys_enabled(self, db):
        assert db.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_all_migrations_recorded(self, db):
        versions = {r["version"] for r in db.execute("SELECT version FROM schema_version")}
        assert versions == {1} | {v for v, _ in MIGRATIONS}

    def test_init_is_repeatable(self, db):
        init_db()
        run_migrations()
        count = db.execute("SELECT COUNT(*) FROM schema_version WHERE version = 1").fetchone()[0]
        assert count == 1

    def test_total_xp_cannot_go_negative(self, db):
        XPLedger().ensure("u1")
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE user_stats SET total_xp = -1 WHERE user_id = 'u1'")

    def test_foreign_key_cascade(self, db):
        """Deleting a user should cascade to related tables."""
        XPLedger().apply("u1", 10)
        db.execute("DELETE FROM users WHERE id = 'u1'")
        assert db.execute("SELECT COUNT(*) FROM user_stats WHERE user_id = 'u1'").fetchone()[0] == 0


class TestTransaction:

    def test_commit(self, db):
        with transaction() as conn:
            conn.execute("INSERT INTO users (id, created_at) VALUES ('t1', '')")
        assert db.execute("SELECT id FROM users WHERE id = 't1'").fetchone() is not None

    def test_rollback_on_exception(self, db):
        with pytest.raises(ValueError):
            with transaction() as conn:
                conn.execute("INSERT INTO users (id, created_at) VALUES ('t1', '')")
                raise ValueError("abort")
        assert db.execute("SELECT id FROM users WHERE id = 't1'").fetchone() is None
        assert not db.in_transaction

    def test_nested_joins_outer(self, db):
        with pytest.raises(ValueError):
            with transaction():
                with transaction() as inner:
                    inner.execute("INSERT INTO users (id, created_at) VALUES ('t1', '')")
                raise ValueError("abort")
        assert db.execute("SELECT id FROM users WHERE id = 't1'").fetchone() is None

    def test_sqlite_error_becomes_persistence_failure(self, db):
        with pytest.raises(PersistenceFailure):
            with transaction() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")
        assert not db.in_transaction

    def test_same_connection_per_context(self, db):
        assert get_db() is db
