"""Leaderboard projection over the XP ledger.

Reads are plain SELECTs against user_stats (WAL readers never block the
completion path) and may be served from the cache for LEADERBOARD_CACHE_TTL
seconds. Ordering is total_xp descending, ties broken by ascending user id.
Rank movement is measured against the previous day's snapshot.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from cache_backend import get_cache
from database import get_db, transaction
from errors import ValidationError

logger = logging.getLogger(__name__)

RANK_UP = "up"
RANK_DOWN = "down"
RANK_NONE = "none"
RANK_NEW = "new"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def display_name(full_name: str) -> str:
    """'Ada Lovelace' -> 'Ada L.'; single names are returned unchanged."""
    parts = (full_name or "").split()
    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} {parts[-1][0].upper()}."


def rank_change(current_rank: int, previous_rank: int | None) -> tuple[int, str]:
    """(magnitude, direction) of a rank move since the previous snapshot."""
    if previous_rank is None:
        return 0, RANK_NEW
    if previous_rank > current_rank:
        return previous_rank - current_rank, RANK_UP
    if previous_rank < current_rank:
        return current_rank - previous_rank, RANK_DOWN
    return 0, RANK_NONE


class LeaderboardProjector:

    def __init__(self, cache_ttl: int = 30, retention_days: int = 30):
        self.cache_ttl = cache_ttl
        self.retention_days = retention_days

    def get_leaderboard(self, limit: int = 50, offset: int = 0,
                        today: date | None = None) -> list[dict]:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        today = today or utc_today()

        cache_key = f"leaderboard:{today.isoformat()}:{limit}:{offset}"
        if self.cache_ttl > 0:
            cached = get_cache().get(cache_key)
            if cached is not None:
                return cached

        rows = get_db().execute(
            "SELECT s.user_id, u.name, s.total_xp, s.level, s.current_streak, s.learning_streak "
            "FROM user_stats s JOIN users u ON u.id = s.user_id "
            "WHERE s.show_on_leaderboard = 1 "
            "ORDER BY s.total_xp DESC, s.user_id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        ).fetchall()
        previous = self._previous_ranks(today, [r["user_id"] for r in rows])

        entries = []
        for i, r in enumerate(rows):
            rank = offset + i + 1
            change, change_type = rank_change(rank, previous.get(r["user_id"]))
            entries.append({
                "rank": rank,
                "userId": r["user_id"],
                "name": r["name"],
                "displayName": display_name(r["name"]),
                "totalXP": r["total_xp"],
                "level": r["level"],
                "currentStreak": r["current_streak"],
                "learningStreak": r["learning_streak"],
                "rankChange": change,
                "rankChangeType": change_type,
            })

        if self.cache_ttl > 0:
            get_cache().set(cache_key, entries, ttl=self.cache_ttl)
        return entries

    def set_visibility(self, user_id: str, visible: bool) -> bool:
        if not isinstance(visible, bool):
            raise ValidationError("showOnLeaderboard must be a boolean")
        with transaction() as db:
            db.execute(
                "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
                (user_id, datetime.now().isoformat()),
            )
            db.execute(
                "INSERT INTO user_stats (user_id, show_on_leaderboard, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET show_on_leaderboard = excluded.show_on_leaderboard, "
                "updated_at = excluded.updated_at",
                (user_id, int(visible), datetime.now().isoformat()),
            )
        if self.cache_ttl > 0:
            get_cache().clear()
        logger.info("user %s leaderboard visibility set to %s", user_id, visible)
        return visible

    def total_visible(self) -> int:
        row = get_db().execute(
            "SELECT COUNT(*) AS cnt FROM user_stats WHERE show_on_leaderboard = 1"
        ).fetchone()
        return row["cnt"]

    def rank_of(self, user_id: str, today: date | None = None) -> dict | None:
        """The user's own leaderboard entry, or None when hidden or unknown."""
        db = get_db()
        me = db.execute(
            "SELECT s.user_id, u.name, s.total_xp, s.level, s.current_streak, s.learning_streak "
            "FROM user_stats s JOIN users u ON u.id = s.user_id "
            "WHERE s.user_id = ? AND s.show_on_leaderboard = 1",
            (user_id,),
        ).fetchone()
        if me is None:
            return None
        ahead = db.execute(
            "SELECT COUNT(*) AS cnt FROM user_stats WHERE show_on_leaderboard = 1 "
            "AND (total_xp > ? OR (total_xp = ? AND user_id < ?))",
            (me["total_xp"], me["total_xp"], user_id),
        ).fetchone()["cnt"]
        rank = ahead + 1
        previous = self._previous_ranks(today or utc_today(), [user_id])
        change, change_type = rank_change(rank, previous.get(user_id))
        return {
            "rank": rank,
            "userId": user_id,
            "name": me["name"],
            "displayName": display_name(me["name"]),
            "totalXP": me["total_xp"],
            "level": me["level"],
            "currentStreak": me["current_streak"],
            "learningStreak": me["learning_streak"],
            "rankChange": change,
            "rankChangeType": change_type,
        }

    def snapshot_ranks(self, day: date | None = None) -> int:
        """Store the day's ranking once; later calls for the same day are no-ops.

        Returns the number of rows written (0 when the snapshot already exists).
        """
        day = day or utc_today()
        with transaction() as db:
            exists = db.execute(
                "SELECT 1 FROM rank_snapshots WHERE snapshot_date = ? LIMIT 1",
                (day.isoformat(),),
            ).fetchone()
            if exists:
                logger.info("rank snapshot for %s already exists", day)
                return 0

            rows = db.execute(
                "SELECT user_id, total_xp, level FROM user_stats "
                "WHERE show_on_leaderboard = 1 ORDER BY total_xp DESC, user_id ASC"
            ).fetchall()
            db.executemany(
                "INSERT INTO rank_snapshots (snapshot_date, user_id, rank, total_xp, level) "
                "VALUES (?, ?, ?, ?, ?)",
                [(day.isoformat(), r["user_id"], i + 1, r["total_xp"], r["level"])
                 for i, r in enumerate(rows)],
            )
            cutoff = (day - timedelta(days=self.retention_days)).isoformat()
            pruned = db.execute(
                "DELETE FROM rank_snapshots WHERE snapshot_date < ?", (cutoff,)
            ).rowcount

        logger.info("rank snapshot for %s: %d users, %d old rows pruned", day, len(rows), pruned)
        return len(rows)

    def rank_history(self, user_id: str) -> list[dict]:
        rows = get_db().execute(
            "SELECT snapshot_date, rank, total_xp, level FROM rank_snapshots "
            "WHERE user_id = ? ORDER BY snapshot_date",
            (user_id,),
        ).fetchall()
        return [
            {"date": r["snapshot_date"], "rank": r["rank"],
             "totalXP": r["total_xp"], "level": r["level"]}
            for r in rows
        ]

    def _previous_ranks(self, today: date, user_ids: list[str]) -> dict[str, int]:
        if not user_ids:
            return {}
        yesterday = (today - timedelta(days=1)).isoformat()
        placeholders = ",".join("?" for _ in user_ids)
        rows = get_db().execute(
            f"SELECT user_id, rank FROM rank_snapshots "
            f"WHERE snapshot_date = ? AND user_id IN ({placeholders})",
            (yesterday, *user_ids),
        ).fetchall()
        return {r["user_id"]: r["rank"] for r in rows}
