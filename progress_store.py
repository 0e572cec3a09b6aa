"""Progress record store: per-(user, content) completion and attempt history.

Attempt-tracked activities (quizzes) get a new row per submission so the
attempt chain stays intact for analytics and achievements. Singleton
content (sections, questions, flashcards, media) keeps one row per item,
updated in place.

The xp_awards table lives here as well: a row in it is the persisted fact
that an activity has already been paid.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from database import get_db, transaction

OUTCOME_AWARDED = "awarded"
OUTCOME_CAPPED = "capped"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RECORDED = "recorded"

# keys of the data bag written by the engine, never taken from a client
ENGINE_DATA_KEYS = frozenset({
    "bestScore", "firstAttemptScore", "xpAwarded", "performanceBonus", "quizType",
})


def client_data(data: dict) -> dict:
    """Copy of client-supplied data with engine-owned keys removed."""
    return {k: v for k, v in data.items() if k not in ENGINE_DATA_KEYS}


def utc_iso(ts: datetime) -> str:
    """Normalise a timestamp to a sortable UTC ISO-8601 string."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_submission_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ProgressRecord:
    id: str
    user_id: str
    content_id: str
    content_type: str
    activity_variant: str
    dedupe_key: str
    completed: bool
    score: Optional[float]
    attempts: int
    time_spent: int
    last_accessed: datetime
    sessions: list[dict] = field(default_factory=list)
    first_completed_date: str = ""
    total_xp_earned: int = 0
    outcome: str = OUTCOME_RECORDED
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, r) -> ProgressRecord:
        return cls(
            id=r["id"],
            user_id=r["user_id"],
            content_id=r["content_id"],
            content_type=r["content_type"],
            activity_variant=r["activity_variant"],
            dedupe_key=r["dedupe_key"],
            completed=bool(r["completed"]),
            score=r["score"],
            attempts=r["attempts"],
            time_spent=r["time_spent"],
            last_accessed=datetime.fromisoformat(r["last_accessed"]),
            sessions=json.loads(r["sessions"]),
            first_completed_date=r["first_completed_date"],
            total_xp_earned=r["total_xp_earned"],
            outcome=r["outcome"],
            data=json.loads(r["data"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contentId": self.content_id,
            "contentType": self.content_type,
            "activityVariant": self.activity_variant or None,
            "completed": self.completed,
            "score": self.score,
            "attempts": self.attempts,
            "timeSpent": self.time_spent,
            "lastAccessed": utc_iso(self.last_accessed),
            "sessions": self.sessions,
            "firstCompletedDate": self.first_completed_date or None,
            "totalXPEarned": self.total_xp_earned,
            "outcome": self.outcome,
            "data": self.data,
        }


class ProgressRecordStore:

    def latest(self, user_id: str, dedupe_key: str) -> ProgressRecord | None:
        """Most recent record for a user and dedupe key."""
        row = get_db().execute(
            "SELECT * FROM progress_records WHERE user_id = ? AND dedupe_key = ? "
            "ORDER BY last_accessed DESC, attempts DESC LIMIT 1",
            (user_id, dedupe_key),
        ).fetchone()
        return ProgressRecord.from_row(row) if row else None

    def for_user(self, user_id: str, content_type: str = "", limit: int = 100) -> list[ProgressRecord]:
        sql = "SELECT * FROM progress_records WHERE user_id = ?"
        params: list = [user_id]
        if content_type:
            sql += " AND content_type = ?"
            params.append(content_type)
        sql += " ORDER BY last_accessed DESC LIMIT ?"
        params.append(limit)
        rows = get_db().execute(sql, params).fetchall()
        return [ProgressRecord.from_row(r) for r in rows]

    def append_attempt(self, *, user_id: str, content_id: str, content_type: str,
                       activity_variant: str, dedupe_key: str, completed: bool,
                       score: Optional[float], time_spent: int, accessed_at: datetime,
                       outcome: str, xp_awarded: int, data: dict) -> ProgressRecord:
        """Insert a new attempt row chained onto the previous one for this key."""
        with transaction() as db:
            previous = self.latest(user_id, dedupe_key)
            attempts = (previous.attempts if previous else 0) + 1
            total_time = (previous.time_spent if previous else 0) + time_spent
            total_xp = (previous.total_xp_earned if previous else 0) + xp_awarded
            first_completed = previous.first_completed_date if previous else ""
            if not first_completed and completed:
                first_completed = accessed_at.date().isoformat()

            record = ProgressRecord(
                id=new_submission_id(),
                user_id=user_id,
                content_id=content_id,
                content_type=content_type,
                activity_variant=activity_variant,
                dedupe_key=dedupe_key,
                completed=completed,
                score=score,
                attempts=attempts,
                time_spent=total_time,
                last_accessed=accessed_at,
                sessions=[_session_entry(attempts, score, time_spent, accessed_at, outcome, xp_awarded)],
                first_completed_date=first_completed,
                total_xp_earned=total_xp,
                outcome=outcome,
                data=data,
            )
            db.execute(
                "INSERT INTO progress_records (id, user_id, content_id, content_type, activity_variant, "
                "dedupe_key, singleton_key, completed, score, attempts, time_spent, last_accessed, "
                "sessions, first_completed_date, total_xp_earned, outcome, data) "
                "VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (record.id, user_id, content_id, content_type, activity_variant, dedupe_key,
                 int(completed), score, attempts, total_time, utc_iso(accessed_at),
                 json.dumps(record.sessions), first_completed, total_xp, outcome, json.dumps(data)),
            )
        return record

    def upsert_singleton(self, *, user_id: str, content_id: str, content_type: str,
                         activity_variant: str, dedupe_key: str, completed: bool,
                         score: Optional[float], time_spent: int, accessed_at: datetime,
                         outcome: str, xp_awarded: int, data: dict) -> ProgressRecord:
        """Create or update the single row for this content item."""
        singleton_key = "|".join((user_id, content_type, content_id, activity_variant))
        with transaction() as db:
            row = db.execute(
                "SELECT * FROM progress_records WHERE singleton_key = ?", (singleton_key,)
            ).fetchone()

            if row is None:
                first_completed = accessed_at.date().isoformat() if completed else ""
                merged = dict(data)
                if score is not None:
                    merged["bestScore"] = score
                    merged["firstAttemptScore"] = score
                sessions = [_session_entry(1, score, time_spent, accessed_at, outcome, xp_awarded)]
                db.execute(
                    "INSERT INTO progress_records (id, user_id, content_id, content_type, "
                    "activity_variant, dedupe_key, singleton_key, completed, score, attempts, "
                    "time_spent, last_accessed, sessions, first_completed_date, total_xp_earned, "
                    "outcome, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?)",
                    (new_submission_id(), user_id, content_id, content_type, activity_variant,
                     dedupe_key, singleton_key, int(completed), score, time_spent,
                     utc_iso(accessed_at), json.dumps(sessions), first_completed, xp_awarded,
                     outcome, json.dumps(merged)),
                )
            else:
                existing = ProgressRecord.from_row(row)
                merged = {**existing.data, **data}
                if score is not None:
                    merged["bestScore"] = max(existing.data.get("bestScore", score), score)
                sessions = existing.sessions + [
                    _session_entry(existing.attempts + 1, score, time_spent, accessed_at, outcome, xp_awarded)
                ]
                first_completed = existing.first_completed_date
                if not first_completed and completed:
                    first_completed = accessed_at.date().isoformat()
                db.execute(
                    "UPDATE progress_records SET completed = MAX(completed, ?), "
                    "score = COALESCE(?, score), attempts = attempts + 1, "
                    "time_spent = time_spent + ?, last_accessed = ?, sessions = ?, "
                    "first_completed_date = ?, total_xp_earned = total_xp_earned + ?, "
                    "outcome = CASE WHEN ? = ? THEN outcome ELSE ? END, data = ? "
                    "WHERE singleton_key = ?",
                    (int(completed), score, time_spent, utc_iso(accessed_at), json.dumps(sessions),
                     first_completed, xp_awarded, outcome, OUTCOME_DUPLICATE, outcome,
                     json.dumps(merged), singleton_key),
                )

            row = db.execute(
                "SELECT * FROM progress_records WHERE singleton_key = ?", (singleton_key,)
            ).fetchone()
        return ProgressRecord.from_row(row)

    def claim_award(self, *, user_id: str, award_key: str, activity_variant: str,
                    award_day: str, submission_id: str, xp: int, performance_bonus: int = 0) -> bool:
        """Conditionally insert an award row. False means it was already paid."""
        with transaction() as db:
            cur = db.execute(
                "INSERT OR IGNORE INTO xp_awards (user_id, award_key, activity_variant, award_day, "
                "submission_id, xp, performance_bonus, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (user_id, award_key, activity_variant, award_day, submission_id, xp,
                 performance_bonus, datetime.now().isoformat()),
            )
            return cur.rowcount == 1

    def awards_on(self, user_id: str, award_day: str) -> list[dict]:
        rows = get_db().execute(
            "SELECT activity_variant, xp, performance_bonus, created_at FROM xp_awards "
            "WHERE user_id = ? AND award_day = ? ORDER BY id",
            (user_id, award_day),
        ).fetchall()
        return [dict(r) for r in rows]


def _session_entry(attempt: int, score, time_spent: int, accessed_at: datetime,
                   outcome: str, xp_awarded: int) -> dict:
    return {
        "attempt": attempt,
        "score": score,
        "timeSpent": time_spent,
        "timestamp": utc_iso(accessed_at),
        "outcome": outcome,
        "xpAwarded": xp_awarded,
    }
