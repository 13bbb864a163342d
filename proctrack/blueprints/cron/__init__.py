"""Scheduled-job endpoints (routes in routes.py)."""

from .routes import cron_bp  # noqa: F401
