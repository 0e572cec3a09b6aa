"""Tests for stats.py: snapshot aggregation, the public stats view and daily progress."""

from datetime import datetime, time, timezone

import pytest

from conftest import at, quiz
from stats import build_snapshot, daily_goal, get_daily_progress, get_user_stats

UID = "learner-1"


def _content(content_type, content_id, day, **extra):
    event = {"userId": UID, "contentId": content_id, "contentType": content_type,
             "timestamp": at(2026, 3, day).isoformat()}
    event.update(extra)
    return event


class TestSnapshot:

    def test_unknown_user_is_empty(self, db):
        snap = build_snapshot("ghost")
        assert snap.total_xp == 0
        assert snap.level == 1
        assert snap.total_quizzes_completed == 0
        assert snap.average_score == 0

    def test_counts_by_type(self, gate):
        gate.submit_completion(quiz(score=40, when=at(2026, 3, 2)))
        gate.submit_completion(_content("question", "q1", 3, score=95))
        gate.submit_completion(_content("question", "q2", 4, score=85))
        gate.submit_completion(_content("flashcard", "f1", 3))
        gate.submit_completion(_content("flashcard", "f2", 3))
        gate.submit_completion(_content("media", "m1", 4))

        snap = build_snapshot(UID)
        assert snap.total_quizzes_completed == 2
        assert snap.total_flashcards_completed == 2
        assert snap.total_media_completed == 1
        assert snap.average_score == 90
        assert snap.perfect_scores == 1
        assert snap.study_days == 3
        assert snap.completions_by_type == {"quiz": 1, "question": 2, "flashcard": 2, "media": 1}

    def test_quiz_games_do_not_feed_question_stats(self, gate):
        gate.submit_completion(quiz(score=100, when=at(2026, 3, 2)))
        gate.submit_completion(quiz(variant="random_quiz", score=100, when=at(2026, 3, 2, 15)))
        snap = build_snapshot(UID)
        assert snap.total_quizzes_completed == 0
        assert snap.average_score == 0
        assert snap.perfect_scores == 0
        assert snap.total_xp == 20


class TestUserStats:

    def test_shape(self, gate):
        gate.submit_completion(quiz(score=92, when=at(2026, 3, 2)))
        gate.submit_completion(_content("question", "q1", 2, score=70))
        stats = get_user_stats(UID)
        assert stats["totalXP"] == 14
        assert stats["level"] == 1
        assert stats["xpToNextLevel"] == 86
        assert stats["currentStreak"] == 1
        assert stats["maxStreak"] == 1
        assert stats["learningStreak"] == 1
        assert stats["totalQuizzesCompleted"] == 1
        assert stats["averageScore"] == 70
        assert stats["showOnLeaderboard"] is True

    def test_new_user_defaults(self, db):
        stats = get_user_stats("ghost")
        assert stats["totalXP"] == 0
        assert stats["xpToNextLevel"] == 100
        assert stats["showOnLeaderboard"] is True


class TestDailyGoal:

    @pytest.mark.parametrize("avg,streak,goal", [
        (1, 0, 3), (4, 0, 5), (6, 0, 7), (10, 0, 10), (12, 0, 14), (20, 0, 15),
        (1, 4, 4), (1, 8, 5), (12, 8, 14),
    ])
    def test_goal(self, avg, streak, goal):
        assert daily_goal(avg, streak) == goal


class TestDailyProgress:

    @staticmethod
    def _today():
        return datetime.now(timezone.utc).date()

    def _event(self, content_type, content_id, hour, **extra):
        when = datetime.combine(self._today(), time(hour), tzinfo=timezone.utc)
        event = {"userId": UID, "contentId": content_id, "contentType": content_type,
                 "timestamp": when.isoformat()}
        event.update(extra)
        return event

    def test_today(self, gate):
        gate.submit_completion(self._event("quiz", "quiz-1", 8, activityVariant="timed_quiz", score=100))
        gate.submit_completion(self._event("question", "q1", 9, score=80))
        for i in range(3):
            gate.submit_completion(self._event("flashcard", f"f{i}", 10 + i))

        progress = get_daily_progress(UID, self._today())
        assert progress["todayStats"] == {"quizzes": 1, "flashcards": 3, "media": 0, "total": 5}
        assert progress["type"] == "flashcards"
        assert progress["completed"] == 3
        # five completions on a one-day-old account: goal 6, flashcard target 3x
        assert progress["target"] == 18
        assert progress["weeklyStats"]["total"] == 5
        assert progress["xpEarnedToday"] == 15
        assert progress["awardedToday"] == ["timed_quiz"]
        assert progress["streak"] == 1

    def test_duplicates_are_not_counted(self, gate):
        gate.submit_completion(self._event("flashcard", "f1", 10))
        gate.submit_completion(self._event("flashcard", "f1", 10, timeSpent=5))
        progress = get_daily_progress(UID, self._today())
        assert progress["todayStats"]["flashcards"] == 1

    def test_new_user(self, db):
        progress = get_daily_progress("ghost", self._today())
        assert progress["completed"] == 0
        assert progress["target"] == 3
        assert progress["type"] == "quiz sessions"
        assert progress["xpEarnedToday"] == 0
        assert progress["awardedToday"] == []
