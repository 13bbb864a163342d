"""
Authentication Routes

Provides:
- POST /auth/login      (JSON email/password -> session cookie)
- POST /auth/logout
- GET  /auth/me
- GET  /auth/csrf-token (token for cookie-session clients)

Rules:
- Only active users may log in.
- Credentials validated via password hash.
- API clients may skip the session entirely and send `Authorization: Bearer <token>`
  (resolved by the request loader in the app factory).
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...errors import Unauthorized
from ...forms import LoginForm, bind_form
from ...models import User
from ...rate_limit import enforce_rate_limit
from ...security import login_required_json
from ...utils import normalize_payload

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user and start a session."""
    enforce_rate_limit("auth_login")
    form = bind_form(LoginForm, normalize_payload(request.get_json(silent=True)))

    email = form.email.data.strip().lower()
    user = User.query.filter_by(email=email).first()

    if not user or not user.check_password(form.password.data):
        logger.info("Failed login for %s", email)
        raise Unauthorized("Invalid email or password")

    if not user.is_active:
        raise Unauthorized("Account is disabled")

    login_user(user)
    logger.info("User %s logged in", user.email)
    return jsonify({"user": user.to_dict(), "csrf_token": generate_csrf()})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required_json
def logout():
    logout_user()
    return jsonify({"ok": True})


# ============================================================
# SESSION INFO
# ============================================================

@auth_bp.route("/me", methods=["GET"])
@login_required_json
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
