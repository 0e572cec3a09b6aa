"""Completion submission, user stats, achievements and progress routes."""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from extensions import EngineManager, limiter
from helpers import current_user_id, json_body
from leaderboard import utc_today
from progress_store import ProgressRecordStore
from stats import get_daily_progress, get_user_stats

bp = Blueprint("progress", __name__)


def _completion_limit() -> str:
    return current_app.config.get("COMPLETION_RATE_LIMIT", "60 per minute")


@bp.route("/api/progress/complete", methods=["POST"])
@login_required
@limiter.limit(_completion_limit)
def api_complete():
    result = EngineManager.get_gate().submit_completion(
        _payload_for(current_user_id(), json_body())
    )
    return jsonify(result.to_dict())


def _payload_for(user_id: str, body: dict) -> dict:
    # identity and time come from the server, never from the body
    payload = {k: v for k, v in body.items() if k not in ("userId", "user_id", "timestamp")}
    payload["userId"] = user_id
    payload["timestamp"] = datetime.now(timezone.utc)
    return payload


@bp.route("/api/user/daily-progress")
@login_required
def api_daily_progress():
    return jsonify(get_daily_progress(current_user_id(), utc_today()))


@bp.route("/api/user/stats")
@login_required
def api_user_stats():
    return jsonify(get_user_stats(current_user_id()))


@bp.route("/api/user/achievements")
@login_required
def api_user_achievements():
    gate = EngineManager.get_gate()
    unlocked = gate.evaluator.unlocked(current_user_id())
    unlocked_ids = {a["id"] for a in unlocked}
    return jsonify({
        "achievements": unlocked,
        "locked": [d.to_dict() for d in EngineManager.get_catalog() if d.id not in unlocked_ids],
    })


@bp.route("/api/progress")
@login_required
def api_progress():
    content_type = request.args.get("contentType", "")
    try:
        limit = min(500, max(1, int(request.args.get("limit", 100))))
    except (TypeError, ValueError):
        limit = 100
    records = ProgressRecordStore().for_user(current_user_id(), content_type, limit)
    return jsonify({"progress": [r.to_dict() for r in records]})


@bp.route("/api/user/leaderboard-visibility", methods=["PUT"])
@login_required
def api_leaderboard_visibility():
    body = json_body()
    visible = EngineManager.get_leaderboard().set_visibility(
        current_user_id(), body.get("showOnLeaderboard")
    )
    return jsonify({"showOnLeaderboard": visible})


@bp.route("/api/user/rank-history")
@login_required
def api_rank_history():
    return jsonify({"history": EngineManager.get_leaderboard().rank_history(current_user_id())})
