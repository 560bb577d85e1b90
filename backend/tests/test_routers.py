"""
Tests for the HTTP surface

Key tests:
1. /access/check and /access/explain read stored assignments
2. Unknown evidence ids are 404, unknown permissions 400
3. Internal scheduler endpoints require the internal API key
4. Storage conflicts surface as 409
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from rescue_ops import config
from rescue_ops.database import get_db
from rescue_ops.errors import ConflictError
from rescue_ops.main import app
from rescue_ops.models.roles import RoleId


@pytest.fixture
def client(db_session):
    """Client bound to the per-test in-memory session."""
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# =============================================================================
# GENERAL
# =============================================================================

class TestGeneral:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Rescue Ops"


# =============================================================================
# ACCESS
# =============================================================================

class TestAccessRoutes:
    """Permission decisions over HTTP."""

    def test_check_allow(self, client, seed_role):
        seed_role("mod-1", RoleId.MODERATOR)
        response = client.post("/access/check", json={"user_id": "mod-1", "permission": "case.view"})

        assert response.status_code == 200
        body = response.json()
        assert body["decision"] == "allow"
        assert body["granting_roles"] == ["moderator"]

    def test_check_requires_break_glass(self, client, seed_role):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        body = client.post("/access/check", json={"user_id": "lead-1", "permission": "data.pii_view"}).json()

        assert body["decision"] == "requires_break_glass"
        assert body["break_glass_scopes"] == ["pii"]

    def test_unknown_user_denied(self, client):
        body = client.post("/access/check", json={"user_id": "ghost", "permission": "case.view"}).json()
        assert body["decision"] == "deny"
        assert body["audit_note"] == "Permission denied: No active roles"

    def test_unknown_permission_is_400(self, client):
        response = client.post("/access/check", json={"user_id": "mod-1", "permission": "case.delete"})
        assert response.status_code == 400

    def test_unknown_break_glass_is_404(self, client, seed_role):
        seed_role("lead-1", RoleId.LEAD_MODERATOR)
        response = client.post("/access/check", json={
            "user_id": "lead-1", "permission": "data.pii_view", "break_glass_id": "missing",
        })
        assert response.status_code == 404

    def test_explain(self, client, seed_role):
        seed_role("mod-1", RoleId.MODERATOR)
        response = client.post("/access/explain", json={"user_id": "mod-1", "permission": "case.archive"})

        assert response.status_code == 200
        body = response.json()
        assert body["result"]["decision"] == "deny"
        assert body["role_breakdown"][0]["role_id"] == "moderator"
        assert body["role_breakdown"][0]["has_permission"] is False

    def test_conflict_is_409(self, client):
        with patch("rescue_ops.routers.access.AccessService.check",
                   side_effect=ConflictError("break_glass_requests b-1: expected version 1, found 2")):
            response = client.post("/access/check", json={"user_id": "lead-1", "permission": "case.view"})

        assert response.status_code == 409
        assert "expected version 1" in response.json()["detail"]


# =============================================================================
# INTERNAL SCHEDULER
# =============================================================================

class TestSchedulerRoutes:
    """Internal endpoints."""

    def test_missing_key_rejected(self, client):
        assert client.post("/internal/expiry-sweep").status_code == 422

    def test_wrong_key_forbidden(self, client):
        response = client.post("/internal/expiry-sweep", headers={"x-internal-key": "wrong"})
        assert response.status_code == 403
        assert response.json()["detail"] == "Invalid internal API key"

    def test_expiry_sweep(self, client):
        response = client.post("/internal/expiry-sweep", headers={"x-internal-key": config.INTERNAL_API_KEY})
        assert response.status_code == 200
        assert response.json()["task"] == "expiry_sweep"

    def test_sla_check(self, client):
        response = client.post("/internal/sla-check", headers={"x-internal-key": config.INTERNAL_API_KEY})
        assert response.status_code == 200
        assert response.json()["task"] == "sla_check"

    def test_sweep_delegates_to_sweeper(self, client):
        summary = {"task": "expiry_sweep", "run_date": "2026-01-01T00:00:00+00:00", "enabled": False}
        with patch("rescue_ops.routers.scheduler.ExpirySweeper.run_expiry_sweep", return_value=summary) as run:
            response = client.post("/internal/expiry-sweep", headers={"x-internal-key": config.INTERNAL_API_KEY})

        run.assert_called_once_with()
        assert response.json() == summary
