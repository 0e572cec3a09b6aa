"""
Audit logging: records administrative and security-relevant events.

Events are written to both the audit_log table and structured logging.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import has_request_context, request

from database import get_db

logger = logging.getLogger(__name__)


def log_event(action: str, user_id: str | None = None, detail: str = "") -> None:
    """Insert an audit log entry and emit a structured log line.

    Runs inside the caller's transaction when one is open, so the audit row
    commits or rolls back together with the change it describes.
    """
    ip = (request.remote_addr or "") if has_request_context() else ""
    ua = request.headers.get("User-Agent", "") if has_request_context() else ""
    now = datetime.now().isoformat()

    db = get_db()
    db.execute(
        "INSERT INTO audit_log (user_id, action, detail, ip_address, user_agent, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (user_id, action, detail, ip, ua, now),
    )

    logger.info("audit: %s user_id=%s detail=%s ip=%s", action, user_id, detail, ip)
