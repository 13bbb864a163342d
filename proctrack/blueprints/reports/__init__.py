"""Reporting endpoints (routes in routes.py)."""

from .routes import reports_bp  # noqa: F401
