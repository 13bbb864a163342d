"""Cases API blueprint (routes in routes.py)."""

from .routes import cases_bp  # noqa: F401
