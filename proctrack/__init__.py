"""
proctrack/__init__.py

Flask application factory for the Procurement Case Tracker.

Requirements:
- JSON API only; every response (errors included) is JSON.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev and tests.
- Clients are never trusted; role checks, transition rules and edit locks are enforced
  server-side.

Authentication:
- Cookie session (POST /auth/login) for browser clients. Mutating requests on a cookie
  session must carry the CSRF token (X-CSRFToken header).
- `Authorization: Bearer <api token>` for API clients (no CSRF; no cookie involved).
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify, request
from flask_wtf.csrf import CSRFError
from werkzeug.middleware.proxy_fix import ProxyFix

from .errors import Unauthorized, register_error_handlers
from .extensions import csrf, db, enable_sqlite_savepoints, login_manager, migrate
from .logging_config import setup_logging
from .models import Role, User
from .services import get_services, init_services
from .utils import token_digest

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Login has no session yet; cron is authenticated by its own bearer secret.
CSRF_EXEMPT_ENDPOINTS = frozenset({"auth.login"})
CSRF_EXEMPT_BLUEPRINTS = frozenset({"cron"})


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    setup_logging(app)

    proxies = app.config.get("PROXY_FIX_X_FOR", 0)
    if proxies:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxies, x_proto=proxies)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    with app.app_context():
        enable_sqlite_savepoints(db.engine)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login (cookie session)."""
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.request_loader
    def load_user_from_request(req) -> User | None:
        """Resolve `Authorization: Bearer <token>` to an active user."""
        token = _bearer_token()
        if token is None:
            return None
        return User.query.filter_by(api_token_hash=token_digest(token), is_active=True).first()

    @login_manager.unauthorized_handler
    def _unauthorized():
        raise Unauthorized()

    # ----------------------------------------------------------------------
    # CSRF for cookie sessions only (WTF_CSRF_CHECK_DEFAULT is off).
    # ----------------------------------------------------------------------
    @app.before_request
    def _csrf_guard_hook():
        if not app.config.get("WTF_CSRF_ENABLED", True) or request.method not in MUTATING_METHODS:
            return None
        if request.headers.get("Authorization"):
            return None
        if request.endpoint in CSRF_EXEMPT_ENDPOINTS or request.blueprint in CSRF_EXEMPT_BLUEPRINTS:
            return None
        csrf.protect()
        return None

    @app.errorhandler(CSRFError)
    def _csrf_error(exc: CSRFError):
        response = jsonify({"error": "csrf_failed", "message": exc.description})
        response.status_code = 400
        return response

    init_services(app)
    register_error_handlers(app)

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.cases import cases_bp
    from .blueprints.cron import cron_bp
    from .blueprints.reports import reports_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(cases_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(reports_bp)

    @app.route("/health")
    def health():
        return jsonify({"ok": True, "app": app.config.get("APP_NAME")})

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development; use `flask db upgrade` with migrations)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-users")
    @click.option("--password", default="changeme", show_default=True, help="Password for new accounts.")
    def seed_users_command(password: str):
        """Seed one account per role."""
        from .seed import seed_users

        created = seed_users(password=password)
        for email, token in created.items():
            click.echo(f"{email}  token={token}")
        click.echo(f"{len(created)} user(s) created.")

    @app.cli.command("create-user")
    @click.argument("email")
    @click.option(
        "--role",
        type=click.Choice([role.value for role in Role], case_sensitive=False),
        default=Role.VIEWER.value,
        show_default=True,
    )
    @click.option("--password", default=None, help="Optional password for cookie-session login.")
    @click.option("--full-name", default=None)
    def create_user_command(email: str, role: str, password: str | None, full_name: str | None):
        """Create a user and print its API token (shown once)."""
        from .seed import create_user

        if User.query.filter_by(email=email.strip().lower()).first():
            raise click.ClickException(f"User {email} already exists")
        user, token = create_user(email, Role(role.upper()), password=password, full_name=full_name)
        db.session.commit()
        click.echo(f"Created {user.email} ({user.role.value})")
        click.echo(f"API token: {token}")

    @app.cli.command("sweep-reminders")
    def sweep_reminders_command():
        """Deliver due reminders (same work as POST /api/cron/reminders)."""
        from .reminders import sweep_due

        sent = sweep_due()
        click.echo(f"{sent} reminder(s) sent.")

    @app.cli.command("purge-idempotency-keys")
    def purge_idempotency_keys_command():
        """Delete idempotency keys older than IDEMPOTENCY_TTL_SECONDS."""
        services = get_services()
        removed = services.idempotency.purge_expired(services.clock())
        click.echo(f"{removed} key(s) purged.")

    return app
