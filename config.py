"""
Application configuration.

This module defines the configuration settings for the Flask application: database connection,
secret key, shared stores (Redis), rate limits, idempotency retention, reminder recipients and
logging. It uses environment variables for sensitive information and defaults for development.
In production, set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'proctrack.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF applies to cookie-session mutations only; bearer-token clients are exempt.
    WTF_CSRF_ENABLED = True
    WTF_CSRF_CHECK_DEFAULT = False

    APP_NAME = "Procurement Case Tracker"

    # Shared backing store for rate limiting and idempotency. Empty = per-process / database.
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Number of trusted reverse proxies in front of the app (0 = X-Forwarded-For is ignored).
    PROXY_FIX_X_FOR = int(os.environ.get("PROXY_FIX_X_FOR", "0"))

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_MAX = int(os.environ.get("RATE_LIMIT_MAX", "30"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))

    # Keys must outlive client retry windows.
    IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", str(24 * 60 * 60)))

    # RA 9184 small value procurement: at least three quotations before the abstract.
    MIN_QUOTATIONS = int(os.environ.get("MIN_QUOTATIONS", "3"))
    DEFAULT_DAYS_TO_COMPLY = int(os.environ.get("DEFAULT_DAYS_TO_COMPLY", "30"))

    # Notifications (Resend HTTP API). Without an API key reminders are only logged.
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
    NOTIFY_FROM = os.environ.get("NOTIFY_FROM", "noreply@proctrack.local")
    REMINDER_RECIPIENTS = {
        "PRE_BID_CONF": os.environ.get("NOTIFY_BAC_EMAIL", "bac@proctrack.local"),
        "BID_OPENING": os.environ.get("NOTIFY_BAC_EMAIL", "bac@proctrack.local"),
        "DELIVERY_DUE": os.environ.get("NOTIFY_SUPPLY_EMAIL", "supply@proctrack.local"),
    }
    DEFAULT_REMINDER_RECIPIENT = os.environ.get("NOTIFY_DEFAULT_EMAIL", "procurement@proctrack.local")

    # Bearer secret for the periodic reminder sweep. Empty = no check (dev only).
    CRON_SECRET = os.environ.get("CRON_SECRET", "")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", False)


class TestingConfig(Config):
    """Isolated in-memory configuration used by the test suite."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    REDIS_URL = ""
    RATE_LIMIT_ENABLED = False
    RESEND_API_KEY = ""
    CRON_SECRET = "test-cron-secret"
    LOG_LEVEL = "WARNING"
