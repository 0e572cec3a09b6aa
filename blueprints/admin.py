"""Administrative routes: XP corrections and rank snapshots."""

from __future__ import annotations

import hmac
import logging
from datetime import date

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from auth import User
from errors import ValidationError
from extensions import EngineManager
from helpers import admin_required, current_user_id, json_body
from xp_ledger import XPLedger

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__)


@bp.route("/api/admin/xp-adjustments", methods=["POST"])
@admin_required
def api_xp_adjustment():
    body = json_body()
    user_id = body.get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("userId is required")
    if User.get(user_id.strip()) is None:
        return jsonify({"error": "Unknown user"}), 404

    result = XPLedger().adjust(
        user_id.strip(), body.get("delta"), body.get("reason", ""), actor_id=current_user_id()
    )
    return jsonify({
        "userId": user_id.strip(),
        "totalXP": result.total_xp,
        "level": result.level,
        "previousLevel": result.previous_level,
        "leveledUp": result.leveled_up,
    })


def _verify_cron_secret() -> bool:
    """Accept the shared secret as a bearer token or an x-api-key header."""
    expected = current_app.config.get("CRON_SECRET", "")
    if not expected:
        return False
    supplied = request.headers.get("X-Api-Key", "")
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        supplied = supplied or auth[len("Bearer "):]
    return hmac.compare_digest(supplied.encode(), expected.encode())


@bp.route("/api/admin/leaderboard/snapshot", methods=["POST"])
def api_rank_snapshot():
    if not _verify_cron_secret():
        if not current_user.is_authenticated:
            return jsonify({"error": "Unauthorized"}), 401
        if not getattr(current_user, "is_admin", False):
            return jsonify({"error": "Forbidden"}), 403

    day = None
    raw = request.args.get("date", "")
    if raw:
        try:
            day = date.fromisoformat(raw)
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD")

    projector = EngineManager.get_leaderboard()
    written = projector.snapshot_ranks(day)
    return jsonify({
        "status": "ok",
        "created": written > 0,
        "users": written,
    })
