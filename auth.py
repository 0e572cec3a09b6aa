"""
Identity: Flask-Login backed by trusted gateway headers.

The upstream gateway authenticates the learner and forwards X-User-Id,
X-User-Name and X-User-Role. Each authenticated request mirrors that
identity into the users table when it is new or has changed. There are
no passwords or sessions here.
"""

from __future__ import annotations

from datetime import datetime

from flask import jsonify
from flask_login import LoginManager, UserMixin

from database import get_db, transaction

ROLES = ("student", "teacher", "admin")

login_manager = LoginManager()


class User(UserMixin):
    """Current learner as asserted by the gateway."""

    def __init__(self, id: str, name: str = "", role: str = "student"):
        self.id = id
        self.name = name
        self.role = role

    @property
    def is_admin(self):
        return self.role == "admin"

    @staticmethod
    def get(user_id: str):
        row = get_db().execute(
            "SELECT id, name, role FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row:
            return User(row["id"], row["name"], row["role"])
        return None


def sync_user(user_id: str, name: str, role: str) -> bool:
    """Insert or refresh the users row for a gateway identity.

    Returns False without opening a write transaction when the stored row
    already matches, so read-only requests never take the write lock.
    """
    row = get_db().execute("SELECT name, role FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is not None and row["role"] == role and (not name or row["name"] == name):
        return False
    with transaction() as db:
        db.execute(
            "INSERT INTO users (id, name, role, created_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "name = CASE WHEN excluded.name != '' THEN excluded.name ELSE users.name END, "
            "role = excluded.role",
            (user_id, name, role, datetime.now().isoformat()),
        )
    return True


@login_manager.request_loader
def load_user_from_request(req):
    user_id = req.headers.get("X-User-Id", "").strip()
    if not user_id:
        return None
    name = req.headers.get("X-User-Name", "").strip()
    role = req.headers.get("X-User-Role", "").strip().lower()
    if role not in ROLES:
        role = "student"
    sync_user(user_id, name, role)
    return User(user_id, name, role)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Authentication required"}), 401
