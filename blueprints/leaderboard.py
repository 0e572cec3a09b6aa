"""Leaderboard route."""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, jsonify
from flask_login import login_required

from extensions import EngineManager
from helpers import current_user_id, paginate_args, pagination_envelope

bp = Blueprint("leaderboard", __name__)


@bp.route("/api/leaderboard")
@login_required
def api_leaderboard():
    uid = current_user_id()
    page, limit = paginate_args()
    projector = EngineManager.get_leaderboard()

    entries = projector.get_leaderboard(limit=limit, offset=(page - 1) * limit)
    leaderboard = [{**e, "isCurrentUser": e["userId"] == uid} for e in entries]

    return jsonify({
        "leaderboard": leaderboard,
        "currentUserRank": projector.rank_of(uid),
        "pagination": pagination_envelope(projector.total_visible(), page, limit),
        "lastUpdated": datetime.now(timezone.utc).isoformat(),
    })
