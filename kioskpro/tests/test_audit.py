from contextlib import nullcontext

import psycopg
import pytest
from psycopg import errors as pg_errors

from kioskpro.app.routers import audit as audit_router


class _FakeCursor:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.executed = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, params))
        if self.fail_with is not None:
            raise self.fail_with
        if text.startswith("select count(*)::int as c from audit_log"):
            self._rows = [{"c": 1}]
            return
        if text.startswith("select a.id, a.user_id"):
            self._rows = [{"id": 7, "action": "product.update", "entity_type": "product"}]
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _DummyConn:
    def __init__(self, cur):
        self._cursor = cur

    def cursor(self):
        return self._cursor

    def transaction(self):
        return nullcontext()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _patch(monkeypatch, cur):
    monkeypatch.setattr(audit_router, "get_conn", lambda: _DummyConn(cur))
    return cur


def test_filters_are_bound_as_parameters(monkeypatch):
    cur = _patch(monkeypatch, _FakeCursor())

    out = audit_router.list_audit_logs(action=" product.", user_id=" 3f6c1e2a-8b4d-4c1e-9a57-0d2b6f1e4a01 ")

    assert out["total"] == 1
    text, params = cur.executed[0]
    assert "a.action like %s and a.user_id = %s" in text
    assert params == ["product.%", "3f6c1e2a-8b4d-4c1e-9a57-0d2b6f1e4a01"]


def test_malformed_user_filter_is_not_hidden_as_an_empty_page(monkeypatch):
    _patch(monkeypatch, _FakeCursor(fail_with=pg_errors.InvalidTextRepresentation("invalid input syntax for type uuid")))

    with pytest.raises(pg_errors.InvalidTextRepresentation):
        audit_router.list_audit_logs(user_id="not-a-uuid")


def test_outage_still_degrades_to_an_empty_page(monkeypatch):
    _patch(monkeypatch, _FakeCursor(fail_with=psycopg.OperationalError("connection reset")))

    assert audit_router.list_audit_logs() == {"logs": [], "total": 0}
