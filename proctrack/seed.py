"""
proctrack/seed.py

Seed one account per role for development and demos.

Rules:
- Safe to run multiple times (idempotent): existing accounts are matched by email and
  only have their role re-synced.
- API tokens are generated for newly created accounts only and returned to the caller
  (the CLI prints them once; only digests are stored).
"""

from __future__ import annotations

import secrets
from typing import Dict, Optional

from .extensions import db
from .models import Role, User

SEED_DOMAIN = "proctrack.local"

DEFAULT_USERS = [
    # email local part, full name, role
    ("admin", "System Administrator", Role.ADMIN),
    ("procurement", "Procurement Manager", Role.PROCUREMENT_MANAGER),
    ("bac", "BAC Secretariat", Role.BAC_SECRETARIAT),
    ("twg", "TWG Member", Role.TWG_MEMBER),
    ("approver", "Head of Procuring Entity", Role.APPROVER),
    ("supply", "Supply Officer", Role.SUPPLY_MANAGER),
    ("budget", "Budget Officer", Role.BUDGET_MANAGER),
    ("accounting", "Accountant", Role.ACCOUNTING_MANAGER),
    ("cashier", "Cashier", Role.CASHIER_MANAGER),
    ("viewer", "Read-only Viewer", Role.VIEWER),
]


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def create_user(
    email: str,
    role: Role,
    *,
    password: Optional[str] = None,
    full_name: Optional[str] = None,
) -> tuple[User, str]:
    """Create an active user and return it with its freshly generated API token (flushed, not committed)."""
    user = User(email=email.strip().lower(), full_name=full_name, role=role, is_active=True)
    if password:
        user.set_password(password)
    token = new_api_token()
    user.set_api_token(token)
    db.session.add(user)
    db.session.flush()
    return user, token


def seed_users(password: str = "changeme") -> Dict[str, str]:
    """
    Create the default accounts if they don't exist.

    Returns:
        {email: api_token} for accounts created by this call.
    """
    created: Dict[str, str] = {}

    for local_part, full_name, role in DEFAULT_USERS:
        email = f"{local_part}@{SEED_DOMAIN}"
        existing = User.query.filter_by(email=email).first()
        if existing:
            if existing.role != role:
                existing.role = role
            continue

        _, token = create_user(email, role, password=password, full_name=full_name)
        created[email] = token

    db.session.commit()
    return created
