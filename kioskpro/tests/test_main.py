import pytest
from fastapi.testclient import TestClient
from psycopg import errors as pg_errors

from kioskpro.app.config import settings
from kioskpro.app.deps import get_current_user, get_session
from kioskpro.app.main import app
from kioskpro.app.routers import audit as audit_router


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "db_url", None)
    return TestClient(app, raise_server_exceptions=False)


def test_liveness_does_not_touch_the_database(client):
    resp = client.get("/health/live", headers={"X-Request-Id": "req-123"})
    assert resp.status_code == 200
    assert resp.json()["request_id"] == "req-123"
    assert resp.headers["X-Request-Id"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_health_reports_unconfigured_database_as_503(client):
    resp = client.get("/health")
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["db"] == "unconfigured"


def test_protected_routes_need_a_session(client):
    resp = client.get("/dashboard/stats")
    assert resp.status_code == 401


def test_bad_request_body_is_422(client):
    resp = client.post("/auth/login", json={"email": "admin@kiosko.com"})
    assert resp.status_code == 422
    assert resp.json()["detail"] == "validation failed"


def test_login_without_database_is_503(client):
    resp = client.post("/auth/login", json={"email": "admin@kiosko.com", "password": "admin123"})
    assert resp.status_code == 503


def test_malformed_audit_user_filter_is_400(client, monkeypatch):
    admin = {"user_id": "u-admin", "name": "Admin", "email": "admin@kiosko.com", "role": "admin"}

    def _bad_uuid():
        raise pg_errors.InvalidTextRepresentation("invalid input syntax for type uuid")

    monkeypatch.setattr(audit_router, "get_conn", _bad_uuid)
    monkeypatch.setitem(app.dependency_overrides, get_session, lambda: admin)
    monkeypatch.setitem(app.dependency_overrides, get_current_user, lambda: admin)

    resp = client.get("/audit/logs", params={"user_id": "not-a-uuid"})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "invalid value"
