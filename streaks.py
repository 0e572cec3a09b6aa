"""Daily streak counters.

Two counters share one transition rule:
  - current_streak: any non-duplicate completion, keyed on last_active_date
  - learning_streak: curriculum content only (sections, questions,
    flashcards, media), keyed on last_learning_date

Days are UTC calendar days.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from database import transaction
from errors import PersistenceFailure, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakState:
    current_streak: int
    max_streak: int
    learning_streak: int


def next_streak(last_date: date | None, streak: int, activity_date: date) -> int:
    """Streak value after activity on ``activity_date``.

    Same day (or an earlier day) leaves the streak unchanged; the following
    day extends it; anything else starts over at 1.
    """
    if last_date is not None and activity_date <= last_date:
        return streak
    if last_date is not None and (activity_date - last_date).days == 1:
        return streak + 1
    return 1


def _parse_day(value: str) -> date | None:
    return date.fromisoformat(value) if value else None


class StreakTracker:

    def touch(self, user_id: str, activity_date: date, learning: bool = False) -> StreakState:
        if isinstance(activity_date, datetime) or not isinstance(activity_date, date):
            raise ValidationError("activity_date must be a calendar date")

        now = datetime.now().isoformat()
        with transaction() as db:
            db.execute("INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)", (user_id, now))
            db.execute(
                "INSERT OR IGNORE INTO user_stats (user_id, updated_at) VALUES (?, ?)",
                (user_id, now),
            )
            row = db.execute(
                "SELECT current_streak, max_streak, learning_streak, last_active_date, "
                "last_learning_date FROM user_stats WHERE user_id = ?",
                (user_id,),
            ).fetchone()

            last_active = _parse_day(row["last_active_date"])
            current = next_streak(last_active, row["current_streak"], activity_date)
            maximum = max(row["max_streak"], current)
            active_day = row["last_active_date"]
            if last_active is None or activity_date > last_active:
                active_day = activity_date.isoformat()

            learning_streak = row["learning_streak"]
            learning_day = row["last_learning_date"]
            if learning:
                last_learning = _parse_day(learning_day)
                learning_streak = next_streak(last_learning, learning_streak, activity_date)
                if last_learning is None or activity_date > last_learning:
                    learning_day = activity_date.isoformat()

            # compare-and-set on the dates read above
            cur = db.execute(
                "UPDATE user_stats SET current_streak = ?, max_streak = ?, learning_streak = ?, "
                "last_active_date = ?, last_learning_date = ?, updated_at = ? "
                "WHERE user_id = ? AND last_active_date = ? AND last_learning_date = ?",
                (current, maximum, learning_streak, active_day, learning_day,
                 now, user_id,
                 row["last_active_date"], row["last_learning_date"]),
            )
            if cur.rowcount != 1:
                raise PersistenceFailure(f"concurrent streak update for user {user_id}")

        if current != row["current_streak"]:
            logger.info("user %s streak %d -> %d (max %d)",
                        user_id, row["current_streak"], current, maximum)
        return StreakState(current_streak=current, max_streak=maximum,
                           learning_streak=learning_streak)
