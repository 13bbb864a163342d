"""Shared fixtures: app on in-memory SQLite, one bearer-token user per role, fake notifier, fixed clock."""

from datetime import datetime

import pytest

from proctrack import create_app
from proctrack.extensions import db
from proctrack.models import Role
from proctrack.seed import create_user
from proctrack.services import get_services

FIXED_NOW = datetime(2025, 3, 3, 9, 0, 0)


class FakeNotifier:
    """Records every send; `fail = True` makes sends report failure."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, body):
        if self.fail:
            return False
        self.sent.append({"to": to, "subject": subject, "body": body})
        return True


@pytest.fixture
def app():
    app = create_app("config.TestingConfig")
    with app.app_context():
        db.create_all()
        services = get_services()
        services.notifier = FakeNotifier()
        services.clock = lambda: FIXED_NOW
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def notifier(app):
    with app.app_context():
        return get_services().notifier


@pytest.fixture
def tokens(app):
    """{Role: api token} for one active user per role."""
    result = {}
    with app.app_context():
        for role in Role:
            _, token = create_user(f"{role.value.lower()}@example.gov.ph", role, password="secret123")
            result[role] = token
        db.session.commit()
    return result


def auth(token, **extra):
    headers = {"Authorization": f"Bearer {token}"}
    headers.update(extra)
    return headers


@pytest.fixture
def api(client, tokens):
    """Call the JSON API as a role: api("post", "/api/cases", Role.ADMIN, json={...})."""

    def call(method, path, role=Role.ADMIN, headers=None, **kwargs):
        all_headers = auth(tokens[role])
        all_headers.update(headers or {})
        return getattr(client, method)(path, headers=all_headers, **kwargs)

    return call


@pytest.fixture
def new_case(api):
    def create(method="SMALL_VALUE_RFQ", title="Office supplies"):
        resp = api("post", "/api/cases", Role.PROCUREMENT_MANAGER, json={"title": title, "method": method})
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()["id"]

    return create
