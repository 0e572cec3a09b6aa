"""User statistics: the snapshot achievements are evaluated against, and the
public stats view."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

from database import get_db
from progress_store import OUTCOME_DUPLICATE, ProgressRecordStore
from xp_ledger import level_for, xp_to_next_level

# quiz games (content type "quiz") feed XP and streaks only; question
# attempts are what quiz counts and averages are built from
QUESTION_CONTENT_TYPE = "question"
PERFECT_SCORE_THRESHOLD = 90


@dataclass(frozen=True)
class StatsSnapshot:
    total_xp: int = 0
    level: int = 1
    current_streak: int = 0
    max_streak: int = 0
    learning_streak: int = 0
    completions_by_type: dict[str, int] = field(default_factory=dict)
    total_quizzes_completed: int = 0
    total_flashcards_completed: int = 0
    total_media_completed: int = 0
    average_score: int = 0
    perfect_scores: int = 0
    study_days: int = 0


def build_snapshot(user_id: str) -> StatsSnapshot:
    """Aggregate ledger counters and progress records for one user.

    Duplicate resubmissions are excluded from every count.
    """
    db = get_db()
    stats = db.execute("SELECT * FROM user_stats WHERE user_id = ?", (user_id,)).fetchone()

    rows = db.execute(
        "SELECT content_type, COUNT(*) AS cnt FROM progress_records "
        "WHERE user_id = ? AND completed = 1 AND outcome != ? GROUP BY content_type",
        (user_id, OUTCOME_DUPLICATE),
    ).fetchall()
    by_type = {r["content_type"]: r["cnt"] for r in rows}

    scores = db.execute(
        "SELECT AVG(score) AS avg_score, "
        "SUM(CASE WHEN score >= ? THEN 1 ELSE 0 END) AS perfect "
        "FROM progress_records WHERE user_id = ? AND outcome != ? "
        "AND score IS NOT NULL AND content_type = ?",
        (PERFECT_SCORE_THRESHOLD, user_id, OUTCOME_DUPLICATE, QUESTION_CONTENT_TYPE),
    ).fetchone()

    days = db.execute(
        "SELECT COUNT(DISTINCT substr(last_accessed, 1, 10)) AS cnt FROM progress_records "
        "WHERE user_id = ? AND outcome != ?",
        (user_id, OUTCOME_DUPLICATE),
    ).fetchone()

    total_xp = stats["total_xp"] if stats else 0
    return StatsSnapshot(
        total_xp=total_xp,
        level=stats["level"] if stats else level_for(total_xp),
        current_streak=stats["current_streak"] if stats else 0,
        max_streak=stats["max_streak"] if stats else 0,
        learning_streak=stats["learning_streak"] if stats else 0,
        completions_by_type=by_type,
        total_quizzes_completed=by_type.get(QUESTION_CONTENT_TYPE, 0),
        total_flashcards_completed=by_type.get("flashcard", 0),
        total_media_completed=by_type.get("media", 0),
        average_score=round(scores["avg_score"]) if scores["avg_score"] is not None else 0,
        perfect_scores=scores["perfect"] or 0,
        study_days=days["cnt"] if days else 0,
    )


def get_user_stats(user_id: str) -> dict:
    snap = build_snapshot(user_id)
    row = get_db().execute(
        "SELECT show_on_leaderboard FROM user_stats WHERE user_id = ?", (user_id,)
    ).fetchone()
    return {
        "level": snap.level,
        "totalXP": snap.total_xp,
        "xpToNextLevel": xp_to_next_level(snap.total_xp),
        "currentStreak": snap.current_streak,
        "maxStreak": snap.max_streak,
        "learningStreak": snap.learning_streak,
        "totalQuizzesCompleted": snap.total_quizzes_completed,
        "totalFlashcardsCompleted": snap.total_flashcards_completed,
        "totalMediaCompleted": snap.total_media_completed,
        "averageScore": snap.average_score,
        "perfectScores": snap.perfect_scores,
        "studyDays": snap.study_days,
        "showOnLeaderboard": bool(row["show_on_leaderboard"]) if row else True,
    }


# ── Daily progress ───────────────────────────────────────────────────

def daily_goal(avg_daily_activity: int, current_streak: int) -> int:
    """Target activity count for today, scaled to the learner's history."""
    if avg_daily_activity > 10:
        goal = min(15, avg_daily_activity + 2)
    elif avg_daily_activity > 5:
        goal = min(10, avg_daily_activity + 1)
    else:
        goal = max(3, avg_daily_activity + 1)

    if current_streak > 7:
        goal = max(5, goal)
    elif current_streak > 3:
        goal = max(4, goal)
    return goal


def _account_age_days(created_at: str, today: date) -> int:
    if not created_at:
        return 1
    try:
        created = date.fromisoformat(created_at[:10])
    except ValueError:
        return 1
    return max(1, (today - created).days)


def get_daily_progress(user_id: str, today: date) -> dict:
    """Today's activity counts against a dynamic daily goal, plus XP paid today."""
    db = get_db()
    day = today.isoformat()

    rows = db.execute(
        "SELECT content_type, completed FROM progress_records "
        "WHERE user_id = ? AND outcome != ? AND substr(last_accessed, 1, 10) = ?",
        (user_id, OUTCOME_DUPLICATE, day),
    ).fetchall()
    quizzes = sum(1 for r in rows if r["content_type"] in (QUESTION_CONTENT_TYPE, "section"))
    flashcards = sum(1 for r in rows if r["content_type"] == "flashcard")
    media = sum(1 for r in rows if r["content_type"] == "media")
    completed_today = sum(1 for r in rows if r["completed"])

    total_completed = db.execute(
        "SELECT COUNT(*) FROM progress_records WHERE user_id = ? AND completed = 1 AND outcome != ?",
        (user_id, OUTCOME_DUPLICATE),
    ).fetchone()[0]
    weekly_completed = db.execute(
        "SELECT COUNT(*) FROM progress_records WHERE user_id = ? AND completed = 1 "
        "AND outcome != ? AND substr(last_accessed, 1, 10) > ?",
        (user_id, OUTCOME_DUPLICATE, (today - timedelta(days=7)).isoformat()),
    ).fetchone()[0]

    user = db.execute("SELECT created_at FROM users WHERE id = ?", (user_id,)).fetchone()
    streak_row = db.execute(
        "SELECT current_streak FROM user_stats WHERE user_id = ?", (user_id,)
    ).fetchone()
    streak = streak_row["current_streak"] if streak_row else 0

    age = _account_age_days(user["created_at"] if user else "", today)
    goal = daily_goal(max(1, total_completed // age), streak)

    completed, target, goal_type = quizzes, goal, "quiz sessions"
    if flashcards > quizzes and flashcards > media:
        completed, target, goal_type = flashcards, max(10, goal * 3), "flashcards"
    elif media > quizzes and media > flashcards:
        completed, target, goal_type = media, max(2, goal // 2), "videos"

    awards = ProgressRecordStore().awards_on(user_id, day)
    return {
        "date": day,
        "target": target,
        "completed": completed,
        "type": goal_type,
        "todayStats": {
            "quizzes": quizzes,
            "flashcards": flashcards,
            "media": media,
            "total": completed_today,
        },
        "weeklyStats": {
            "total": weekly_completed,
            "daily": round(weekly_completed / 7),
            "streak": streak,
        },
        "xpEarnedToday": sum(a["xp"] for a in awards),
        "awardedToday": sorted({a["activity_variant"] for a in awards}),
        "streak": streak,
    }
