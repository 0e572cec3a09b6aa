"""XP Ledger: the only writer of a user's total_xp and level.

Every mutation is a single in-place UPDATE inside a storage transaction;
total_xp is never read into memory, incremented, and written back.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from audit import log_event
from database import get_db, transaction
from errors import ValidationError

logger = logging.getLogger(__name__)

XP_PER_LEVEL = 100


def level_for(total_xp: int) -> int:
    return total_xp // XP_PER_LEVEL + 1


def xp_to_next_level(total_xp: int) -> int:
    return max(0, level_for(total_xp) * XP_PER_LEVEL - total_xp)


@dataclass(frozen=True)
class LedgerResult:
    total_xp: int
    level: int
    leveled_up: bool
    previous_level: int


def _require_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


class XPLedger:
    """Per-user XP accumulator backed by the user_stats table."""

    def ensure(self, user_id: str) -> None:
        """Create the user and stats rows on first activity."""
        now = datetime.now().isoformat()
        with transaction() as db:
            db.execute(
                "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
                (user_id, now),
            )
            db.execute(
                "INSERT OR IGNORE INTO user_stats (user_id, updated_at) VALUES (?, ?)",
                (user_id, now),
            )

    def get(self, user_id: str) -> sqlite3.Row | None:
        return get_db().execute(
            "SELECT * FROM user_stats WHERE user_id = ?", (user_id,)
        ).fetchone()

    def current_level(self, user_id: str) -> int:
        row = self.get(user_id)
        return row["level"] if row else 1

    def apply(self, user_id: str, delta: int) -> LedgerResult:
        """Add a non-negative amount of XP and recompute the level atomically."""
        delta = _require_int(delta, "delta")
        if delta < 0:
            raise ValidationError("delta must be non-negative; use adjust() for corrections")

        now = datetime.now().isoformat()
        with transaction() as db:
            self.ensure(user_id)
            db.execute(
                "UPDATE user_stats SET total_xp = total_xp + ?, "
                "level = (total_xp + ?) / ? + 1, updated_at = ? WHERE user_id = ?",
                (delta, delta, XP_PER_LEVEL, now, user_id),
            )
            row = db.execute(
                "SELECT total_xp, level FROM user_stats WHERE user_id = ?", (user_id,)
            ).fetchone()

        previous_level = level_for(row["total_xp"] - delta)
        result = LedgerResult(
            total_xp=row["total_xp"],
            level=row["level"],
            leveled_up=row["level"] > previous_level,
            previous_level=previous_level,
        )
        if result.leveled_up:
            logger.info("user %s leveled up %d -> %d (total_xp=%d)",
                        user_id, previous_level, result.level, result.total_xp)
        return result

    def adjust(self, user_id: str, delta: int, reason: str, actor_id: str = "") -> LedgerResult:
        """Signed administrative correction. total_xp is floored at zero."""
        delta = _require_int(delta, "delta")
        if delta == 0:
            raise ValidationError("delta must be non-zero")
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason is required")

        now = datetime.now().isoformat()
        with transaction() as db:
            self.ensure(user_id)
            previous_level = db.execute(
                "SELECT level FROM user_stats WHERE user_id = ?", (user_id,)
            ).fetchone()["level"]
            db.execute(
                "UPDATE user_stats SET total_xp = MAX(0, total_xp + ?), "
                "level = MAX(0, total_xp + ?) / ? + 1, updated_at = ? WHERE user_id = ?",
                (delta, delta, XP_PER_LEVEL, now, user_id),
            )
            row = db.execute(
                "SELECT total_xp, level FROM user_stats WHERE user_id = ?", (user_id,)
            ).fetchone()
            db.execute(
                "INSERT INTO xp_adjustments (user_id, delta, reason, actor_id, total_after, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user_id, delta, reason.strip(), actor_id, row["total_xp"], now),
            )
            log_event("xp_adjustment", user_id,
                      f"delta={delta} total_after={row['total_xp']} actor={actor_id} reason={reason.strip()}")

        return LedgerResult(
            total_xp=row["total_xp"],
            level=row["level"],
            leveled_up=row["level"] > previous_level,
            previous_level=previous_level,
        )
