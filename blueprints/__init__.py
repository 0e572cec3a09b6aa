"""
Blueprint registration for the progression engine.

All blueprints are registered without URL prefixes; routes carry their full paths.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.core import bp as core_bp
    from blueprints.progress import bp as progress_bp
    from blueprints.leaderboard import bp as leaderboard_bp
    from blueprints.admin import bp as admin_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(progress_bp)
    app.register_blueprint(leaderboard_bp)
    app.register_blueprint(admin_bp)
