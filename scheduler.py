"""
Background scheduler for periodic jobs.

Jobs:
  - Daily leaderboard rank snapshot (00:05 UTC)
  - TTL cache cleanup (every 1 hour)
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from cache_backend import get_cache
from errors import PersistenceFailure
from extensions import EngineManager


def snapshot_job(app) -> int:
    """Take today's rank snapshot inside an app context."""
    with app.app_context():
        try:
            written = EngineManager.get_leaderboard().snapshot_ranks()
        except PersistenceFailure as e:
            app.logger.error("Rank snapshot failed: %s", e)
            return 0
    return written


def cleanup_cache_job() -> int:
    return get_cache().cleanup()


def init_scheduler(app) -> BackgroundScheduler:
    """Start the background scheduler and return it."""
    scheduler = BackgroundScheduler(daemon=True, timezone="UTC")

    scheduler.add_job(
        func=snapshot_job,
        args=[app],
        trigger="cron",
        hour=0,
        minute=5,
        id="rank_snapshot",
        replace_existing=True,
    )

    scheduler.add_job(
        func=cleanup_cache_job,
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Scheduler started (rank snapshot, cache cleanup)")
    return scheduler
