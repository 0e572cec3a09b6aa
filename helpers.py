"""
Shared helpers used across blueprints.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, current_app, request
from flask_login import current_user

from auth import login_manager
from errors import ValidationError


def current_user_id() -> str:
    """Return the authenticated user's id. Routes calling this are login_required."""
    return current_user.id


def admin_required(f: Callable) -> Callable:
    """Decorator that requires the admin role."""
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if getattr(current_user, "role", "student") != "admin":
            abort(403)
        return f(*args, **kwargs)
    return decorated


def json_body() -> dict:
    """Request JSON object, or ValidationError."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


# ── Pagination ──────────────────────────────────────────────

def paginate_args() -> tuple[int, int]:
    """Extract page/limit from request.args using the leaderboard limits. Returns (page, limit)."""
    default_limit = current_app.config.get("LEADERBOARD_DEFAULT_LIMIT", 50)
    max_limit = current_app.config.get("LEADERBOARD_MAX_LIMIT", 100)
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (ValueError, TypeError):
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (ValueError, TypeError):
        limit = default_limit
    return page, limit


def pagination_envelope(total: int, page: int, limit: int) -> dict:
    pages = max(1, (total + limit - 1) // limit)
    return {
        "currentPage": page,
        "totalPages": pages,
        "totalUsers": total,
        "hasNextPage": page * limit < total,
        "hasPreviousPage": page > 1,
    }
