from contextlib import nullcontext

import psycopg
import pytest
from fastapi import HTTPException

from kioskpro.app.routers import settings as settings_router
from kioskpro.app.routers.settings import DEFAULT_SETTINGS, clean_values, merge_settings

ADMIN = {"user_id": "u-admin", "name": "Admin Principal", "email": "admin@kiosko.com", "role": "admin"}


class _FakeCursor:
    """The settings table as a dict of category -> stored JSON document."""

    def __init__(self, stored=None):
        self.stored = dict(stored or {})
        self.audits = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text == "select category, data from settings":
            self._rows = [{"category": k, "data": v} for k, v in self.stored.items()]
            return
        if text.startswith("select data from settings where category = %s"):
            self._rows = [{"data": self.stored[params[0]]}] if params[0] in self.stored else []
            return
        if text.startswith("insert into settings"):
            assert "on conflict (category) do update" in text
            category, data = params
            self.stored[category] = data
            return
        if text == "delete from settings":
            self.stored.clear()
            return
        if text.startswith("delete from settings where category = %s"):
            self.stored.pop(params[0], None)
            return
        if text.startswith("insert into audit_log"):
            self.audits.append(params)
            return
        if text.startswith("select version()"):
            self._rows = [{"version": "PostgreSQL 16.2 on x86_64-pc-linux-gnu, compiled by gcc"}]
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


def _patch(monkeypatch, **kwargs):
    cur = _FakeCursor(**kwargs)
    monkeypatch.setattr(settings_router, "get_conn", lambda: _DummyConn(cur))
    return cur


def test_stored_values_overlay_defaults():
    out = merge_settings("business", {"name": "Kiosko Don Pepe", "legacy_key": 1})
    assert out["name"] == "Kiosko Don Pepe"
    assert out["currency"] == "USD"
    assert "legacy_key" not in out
    assert DEFAULT_SETTINGS["business"]["name"] == "Mi Kiosko"


def test_unknown_keys_are_rejected():
    with pytest.raises(HTTPException) as ex:
        clean_values("receipt", {"footer_message": "Vuelva pronto", "footer_colour": "red"})
    assert ex.value.status_code == 400
    assert "footer_colour" in ex.value.detail


def test_never_saved_category_returns_defaults(monkeypatch):
    _patch(monkeypatch)
    out = settings_router.get_settings("appearance")
    assert out == {"category": "appearance", "settings": DEFAULT_SETTINGS["appearance"]}


def test_unknown_category_is_404(monkeypatch):
    _patch(monkeypatch)
    with pytest.raises(HTTPException) as ex:
        settings_router.get_settings("plugins")
    assert ex.value.status_code == 404


def test_save_category_is_audited_and_complete(monkeypatch):
    cur = _patch(monkeypatch)

    out = settings_router.save_settings("Sales", {"max_discount_percent": 10}, user=ADMIN)

    assert out["category"] == "sales"
    assert out["settings"]["max_discount_percent"] == 10
    assert out["settings"]["enable_returns"] is True
    assert '"max_discount_percent": 10' in cur.stored["sales"]
    assert len(cur.audits) == 1
    assert cur.audits[0][:4] == ("u-admin", "settings.update", "settings", "sales")


def test_import_accepts_an_export_document(monkeypatch):
    cur = _patch(monkeypatch)
    doc = {"version": 1, "settings": {"business": {"name": "Bodega Rosa"}, "backup": {"retention_days": 7}}}

    out = settings_router.import_settings(doc, user=ADMIN)

    assert out == {"ok": True, "imported": ["backup", "business"]}
    assert set(cur.stored) == {"backup", "business"}


def test_import_with_unknown_category_is_404(monkeypatch):
    _patch(monkeypatch)
    with pytest.raises(HTTPException) as ex:
        settings_router.import_settings({"settings": {"plugins": {}}}, user=ADMIN)
    assert ex.value.status_code == 404


def test_reset_all_returns_defaults(monkeypatch):
    cur = _patch(monkeypatch, stored={"business": '{"name": "X"}'})
    out = settings_router.reset_all_settings(user=ADMIN)
    assert cur.stored == {}
    assert out["settings"] == DEFAULT_SETTINGS


def test_database_status_trims_version(monkeypatch):
    _patch(monkeypatch)
    out = settings_router.database_status()
    assert out["connected"] is True
    assert out["version"] == "PostgreSQL 16.2 on x86_64-pc-linux-gnu"


def test_database_status_reports_unreachable_database(monkeypatch):
    def _boom():
        raise psycopg.OperationalError("could not connect")

    monkeypatch.setattr(settings_router, "get_conn", _boom)
    out = settings_router.database_status()
    assert out["connected"] is False
    assert "could not connect" in out["error"]


def test_category_read_falls_back_to_defaults_when_the_database_fails(monkeypatch):
    def _boom():
        raise psycopg.OperationalError("could not connect")

    monkeypatch.setattr(settings_router, "get_conn", _boom)
    out = settings_router.get_settings("business")
    assert out == {"category": "business", "settings": DEFAULT_SETTINGS["business"]}
