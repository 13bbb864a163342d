"""Role guard: check_role and the decorators."""

from types import SimpleNamespace

import pytest

from proctrack.errors import Forbidden, Unauthorized
from proctrack.models import Role
from proctrack.security import check_role


def identity(role=Role.BUDGET_MANAGER, authenticated=True, active=True):
    return SimpleNamespace(is_authenticated=authenticated, is_active=active, role=role)


class TestCheckRole:
    def test_allowed(self):
        assert check_role(identity(), {Role.BUDGET_MANAGER, Role.ADMIN}) is Role.BUDGET_MANAGER

    def test_string_role_is_resolved(self):
        assert check_role(identity(role="ADMIN"), {Role.ADMIN}) is Role.ADMIN

    def test_wrong_role_is_forbidden(self):
        with pytest.raises(Forbidden):
            check_role(identity(), {Role.ADMIN})

    def test_anonymous(self):
        with pytest.raises(Unauthorized):
            check_role(identity(authenticated=False), Role)
        with pytest.raises(Unauthorized):
            check_role(None, Role)

    def test_inactive(self):
        with pytest.raises(Unauthorized):
            check_role(identity(active=False), Role)

    def test_unknown_role(self):
        with pytest.raises(Unauthorized):
            check_role(identity(role="JANITOR"), Role)


class TestEndpoints:
    def test_anonymous_gets_401(self, client):
        resp = client.get("/api/cases")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "unauthorized"

    def test_bad_token_gets_401(self, client, tokens):
        resp = client.get("/api/cases", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_viewer_cannot_create(self, api):
        resp = api("post", "/api/cases", Role.VIEWER, json={"title": "x", "method": "SMALL_VALUE_RFQ"})
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "forbidden"

    def test_wrong_stage_role(self, api, new_case):
        case_id = new_case()
        resp = api("post", f"/api/cases/{case_id}/rfq", Role.CASHIER_MANAGER, json={"rfqNumber": "RFQ-1"})
        assert resp.status_code == 403

    def test_unknown_route_is_json(self, api):
        resp = api("get", "/nowhere")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "not_found"
