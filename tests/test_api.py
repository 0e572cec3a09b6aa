"""Tests for the HTTP surface: routes, identity, error mapping."""

from datetime import datetime, timezone

from conftest import at, quiz
from errors import PersistenceFailure


def _complete(client, **kw):
    return client.post("/api/progress/complete", json=quiz(**kw))


def _question(client, content_id="q1", **kw):
    return client.post("/api/progress/complete",
                       json={"contentId": content_id, "contentType": "question", **kw})


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_ready(self, client):
        assert client.get("/ready").status_code == 200

    def test_request_id_header(self, client):
        assert client.get("/health").headers.get("X-Request-Id")


class TestIdentity:

    def test_requires_identity(self, client):
        resp = client.get("/api/user/stats")
        assert resp.status_code == 401
        assert resp.get_json()["error"]

    def test_identity_is_mirrored(self, app, user_client):
        user_client.get("/api/user/stats")
        with app.app_context():
            from database import get_db
            row = get_db().execute("SELECT name, role FROM users WHERE id = 'learner-1'").fetchone()
        assert row["name"] == "Ada Lovelace"
        assert row["role"] == "student"

    def test_body_user_id_is_ignored(self, app, user_client):
        user_client.post("/api/progress/complete", json=quiz(user_id="someone-else"))
        with app.app_context():
            from database import get_db
            owners = {r[0] for r in get_db().execute("SELECT DISTINCT user_id FROM progress_records")}
        assert owners == {"learner-1"}


class TestCompletion:

    def test_award(self, user_client):
        resp = _complete(user_client, score=92)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["awarded"] is True
        assert body["outcome"] == "awarded"
        assert body["xpGained"] >= 14
        assert body["recordId"]

    def test_duplicate(self, user_client):
        _complete(user_client)
        body = _complete(user_client).get_json()
        assert body["awarded"] is False
        assert body["xpGained"] == 0
        assert body["outcome"] == "duplicate"
        assert body["newLevel"] is None

    def test_validation_error_is_400(self, user_client):
        resp = user_client.post("/api/progress/complete",
                                json={"contentId": "q1", "contentType": "quiz",
                                      "activityVariant": "timed_quiz"})
        assert resp.status_code == 400
        assert "score" in resp.get_json()["error"]

    def test_non_json_body_is_400(self, user_client):
        resp = user_client.post("/api/progress/complete", data="nope",
                                headers={"Content-Type": "text/plain"})
        assert resp.status_code == 400

    def test_persistence_failure_is_503(self, app, user_client, monkeypatch):
        def broken(event):
            raise PersistenceFailure("disk I/O error")

        monkeypatch.setattr(app.extensions["progression"]["gate"], "submit_completion", broken)
        resp = _complete(user_client)
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"

    def test_first_timed_quiz_with_shipped_catalog(self, user_client):
        body = _complete(user_client, score=92).get_json()
        assert body["xpGained"] == 14
        assert body["newLevel"] == 1
        assert body["leveledUp"] is False
        assert body["newAchievements"] == []

    def test_first_question_unlocks_first_steps(self, user_client):
        body = _question(user_client, score=50).get_json()
        ids = [a["id"] for a in body["newAchievements"]]
        assert "first_steps" in ids


class TestUserRoutes:

    def test_stats(self, user_client):
        _question(user_client, score=40)
        body = user_client.get("/api/user/stats").get_json()
        assert body["totalQuizzesCompleted"] == 1
        assert body["totalXP"] == 50  # first_steps
        assert body["level"] == 1

    def test_achievements(self, user_client):
        _question(user_client, score=40)
        body = user_client.get("/api/user/achievements").get_json()
        assert [a["id"] for a in body["achievements"]] == ["first_steps"]
        assert body["achievements"][0]["unlockedAt"]
        assert "first_steps" not in [a["id"] for a in body["locked"]]

    def test_progress_listing(self, user_client):
        _complete(user_client)
        user_client.post("/api/progress/complete",
                         json={"contentId": "f1", "contentType": "flashcard"})
        body = user_client.get("/api/progress?contentType=flashcard").get_json()
        assert [p["contentId"] for p in body["progress"]] == ["f1"]

    def test_visibility_toggle(self, user_client):
        resp = user_client.put("/api/user/leaderboard-visibility", json={"showOnLeaderboard": False})
        assert resp.get_json() == {"showOnLeaderboard": False}
        assert user_client.get("/api/user/stats").get_json()["showOnLeaderboard"] is False

    def test_visibility_requires_boolean(self, user_client):
        resp = user_client.put("/api/user/leaderboard-visibility", json={"showOnLeaderboard": "yes"})
        assert resp.status_code == 400


class TestLeaderboardRoute:

    def test_listing_with_current_user(self, user_client, admin_client):
        _complete(user_client, score=100)
        admin_client.post("/api/progress/complete", json={"contentId": "f1", "contentType": "flashcard"})
        body = user_client.get("/api/leaderboard?limit=10").get_json()
        assert body["leaderboard"][0]["userId"] == "learner-1"
        assert body["leaderboard"][0]["isCurrentUser"] is True
        assert body["leaderboard"][0]["displayName"] == "Ada L."
        assert body["currentUserRank"]["rank"] == 1
        assert body["pagination"]["totalUsers"] == 2
        assert body["pagination"]["currentPage"] == 1

    def test_limit_is_capped(self, user_client):
        body = user_client.get("/api/leaderboard?limit=5000").get_json()
        assert body["pagination"]["totalPages"] >= 1

    def test_hidden_user_has_no_rank(self, user_client):
        user_client.put("/api/user/leaderboard-visibility", json={"showOnLeaderboard": False})
        body = user_client.get("/api/leaderboard").get_json()
        assert body["currentUserRank"] is None


class TestAdmin:

    def test_adjustment(self, user_client, admin_client):
        _complete(user_client, score=40)
        resp = admin_client.post("/api/admin/xp-adjustments",
                                 json={"userId": "learner-1", "delta": -4, "reason": "refund"})
        assert resp.status_code == 200
        assert resp.get_json()["totalXP"] == 6

    def test_adjustment_forbidden_for_students(self, user_client):
        resp = user_client.post("/api/admin/xp-adjustments",
                                json={"userId": "learner-1", "delta": 5, "reason": "self"})
        assert resp.status_code == 403

    def test_adjustment_unauthenticated(self, client):
        resp = client.post("/api/admin/xp-adjustments", json={"userId": "x", "delta": 5, "reason": "r"})
        assert resp.status_code == 401

    def test_adjustment_unknown_user(self, admin_client):
        resp = admin_client.post("/api/admin/xp-adjustments",
                                 json={"userId": "ghost", "delta": 5, "reason": "r"})
        assert resp.status_code == 404

    def test_adjustment_validation(self, user_client, admin_client):
        user_client.get("/api/user/stats")
        resp = admin_client.post("/api/admin/xp-adjustments",
                                 json={"userId": "learner-1", "delta": 0, "reason": "r"})
        assert resp.status_code == 400

    def test_snapshot_with_cron_secret(self, client, user_client):
        _complete(user_client)
        resp = client.post("/api/admin/leaderboard/snapshot?date=2026-03-02",
                           headers={"X-Api-Key": "cron-test-secret"})
        assert resp.status_code == 200
        assert resp.get_json()["created"] is True
        again = client.post("/api/admin/leaderboard/snapshot?date=2026-03-02",
                            headers={"Authorization": "Bearer cron-test-secret"})
        assert again.get_json()["created"] is False

    def test_snapshot_as_admin(self, admin_client):
        resp = admin_client.post("/api/admin/leaderboard/snapshot")
        assert resp.status_code == 200

    def test_snapshot_rejects_wrong_secret(self, client):
        resp = client.post("/api/admin/leaderboard/snapshot", headers={"X-Api-Key": "guess"})
        assert resp.status_code == 401

    def test_snapshot_forbidden_for_students(self, user_client):
        assert user_client.post("/api/admin/leaderboard/snapshot").status_code == 403

    def test_snapshot_bad_date(self, admin_client):
        resp = admin_client.post("/api/admin/leaderboard/snapshot?date=03/02/2026")
        assert resp.status_code == 400


class TestServerTime:

    def test_client_timestamps_are_ignored(self, app, user_client):
        gained = []
        for day in range(1, 6):
            resp = _complete(user_client, score=100, when=at(2030, 1, day))
            gained.append(resp.get_json()["xpGained"])

        assert gained == [15, 0, 0, 0, 0]
        stats = user_client.get("/api/user/stats").get_json()
        assert stats["totalXP"] == 15
        assert stats["currentStreak"] == 1
        with app.app_context():
            from database import get_db
            days = {r[0] for r in get_db().execute(
                "SELECT DISTINCT substr(last_accessed, 1, 10) FROM progress_records"
            )}
        assert days == {datetime.now(timezone.utc).date().isoformat()}

    def test_daily_cap_holds_over_http(self, app, user_client):
        app.extensions["progression"]["gate"].duplicate_window_seconds = 0
        outcomes = [
            _complete(user_client, score=100, when=at(2030, 1, day)).get_json()["outcome"]
            for day in range(1, 6)
        ]
        assert outcomes == ["awarded", "capped", "capped", "capped", "capped"]
        stats = user_client.get("/api/user/stats").get_json()
        assert stats["totalXP"] == 15
        assert stats["currentStreak"] == 1


class TestIdentitySync:

    def test_known_identity_reads_without_writing(self, user_client, monkeypatch):
        import auth

        user_client.get("/api/user/stats")

        def no_writes():
            raise AssertionError("identity sync opened a write transaction")

        monkeypatch.setattr(auth, "transaction", no_writes)
        assert user_client.get("/api/user/stats").status_code == 200
        assert user_client.get("/api/leaderboard").status_code == 200

    def test_changed_name_is_written(self, app, user_client):
        user_client.get("/api/user/stats")
        user_client.get("/api/user/stats", headers={"X-User-Name": "Augusta King"})
        with app.app_context():
            from database import get_db
            row = get_db().execute("SELECT name FROM users WHERE id = 'learner-1'").fetchone()
        assert row["name"] == "Augusta King"


class TestDailyProgressRoute:

    def test_shape(self, user_client):
        _complete(user_client, score=92)
        _question(user_client, score=80)
        body = user_client.get("/api/user/daily-progress").get_json()
        assert body["date"] == datetime.now(timezone.utc).date().isoformat()
        assert body["todayStats"]["quizzes"] == 1
        assert body["todayStats"]["total"] == 2
        assert body["xpEarnedToday"] == 14
        assert body["awardedToday"] == ["timed_quiz"]
        assert body["type"] == "quiz sessions"

    def test_requires_identity(self, client):
        assert client.get("/api/user/daily-progress").status_code == 401
