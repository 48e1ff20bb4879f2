from contextlib import nullcontext
from decimal import Decimal

import pytest
from fastapi import HTTPException

from kioskpro.app.routers import purchases as purchases_router
from kioskpro.app.routers.purchases import PurchaseIn, PurchaseStatusIn, purchase_total
from kioskpro.app.store import StoreRegistry

USER = {"user_id": "u-manager", "name": "Carlos", "email": "carlos@kiosko.com", "role": "manager"}


class _FakeCursor:
    """Tiny in-memory stand-in for the purchases, purchase_items and products tables."""

    def __init__(self, purchase_status="pending", supplier_exists=True):
        self.supplier_exists = supplier_exists
        self.purchases = {"po-1": {"id": "po-1", "status": purchase_status}}
        self.items = [
            {"product_id": "p-coke", "quantity": 24},
            {"product_id": "p-milk", "quantity": 12},
            {"product_id": None, "quantity": 3},
        ]
        self.stock = {"p-coke": 10, "p-milk": 0}
        self.inserted_items = []
        self.movements = []
        self.audits = []
        self.deleted = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select id from suppliers"):
            self._rows = [{"id": params[0]}] if self.supplier_exists else []
            return
        if text.startswith("insert into purchases"):
            supplier_id, total, notes = params
            self._rows = [{"id": "po-new", "supplier_id": supplier_id, "total": total, "status": "pending", "notes": notes}]
            return
        if text.startswith("insert into purchase_items"):
            self.inserted_items.append(params)
            return
        if text.startswith("select id, status from purchases") and "for update" in text:
            row = self.purchases.get(params[0])
            self._rows = [dict(row)] if row else []
            return
        if text.startswith("select product_id, quantity from purchase_items"):
            self._rows = [dict(it) for it in self.items]
            return
        if text.startswith("update products set stock = stock + %s"):
            qty, pid = params
            self.stock[pid] += qty
            return
        if text.startswith("update purchases set status = 'received'"):
            self.purchases[params[0]]["status"] = "received"
            return
        if text.startswith("delete from purchases"):
            self.deleted.append(params[0])
            return
        if text.startswith("insert into stock_movements"):
            self.movements.append(params)
            return
        if text.startswith("insert into audit_log"):
            self.audits.append(params)
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


def _patch(monkeypatch, tmp_path, **kwargs):
    cur = _FakeCursor(**kwargs)
    monkeypatch.setattr(purchases_router, "get_conn", lambda: _DummyConn(cur))
    registry = StoreRegistry(tmp_path)
    monkeypatch.setattr(purchases_router, "get_registry", lambda: registry)
    return cur, registry


def _order(**overrides):
    data = {
        "supplier_id": "s-1",
        "items": [
            {"product_id": "p-coke", "quantity": 2, "cost": "1.50"},
            {"product_id": "p-milk", "quantity": 3, "cost": "1.00"},
        ],
    }
    data.update(overrides)
    return PurchaseIn(**data)


def test_purchase_total_is_sum_of_quantity_times_cost():
    assert purchase_total(_order().items) == Decimal("6.00")


def test_create_purchase_inserts_header_and_every_item(monkeypatch, tmp_path):
    cur, _ = _patch(monkeypatch, tmp_path)

    out = purchases_router.create_purchase(_order(notes="  entrega martes "), user=USER)

    assert out["purchase"]["total"] == Decimal("6.00")
    assert out["purchase"]["status"] == "pending"
    assert out["purchase"]["notes"] == "entrega martes"
    assert out["purchase"]["items_count"] == 2
    assert [(p[1], p[2], p[3]) for p in cur.inserted_items] == [
        ("p-coke", 2, Decimal("1.50")),
        ("p-milk", 3, Decimal("1.00")),
    ]
    assert len(cur.audits) == 1


def test_create_purchase_unknown_supplier_is_400(monkeypatch, tmp_path):
    cur, _ = _patch(monkeypatch, tmp_path, supplier_exists=False)
    with pytest.raises(HTTPException) as ex:
        purchases_router.create_purchase(_order(), user=USER)
    assert ex.value.status_code == 400
    assert cur.inserted_items == []


def test_receive_pending_purchase_adds_stock_and_logs_movements(monkeypatch, tmp_path):
    cur, registry = _patch(monkeypatch, tmp_path)
    registry.get("u-cashier").add("products", {"id": "p-coke", "stock": 10})

    out = purchases_router.receive_purchase("po-1", user=USER)

    assert out == {"ok": True, "items_received": 2}
    assert cur.stock == {"p-coke": 34, "p-milk": 12}
    assert cur.purchases["po-1"]["status"] == "received"
    assert [(m[0], m[1], m[2], m[3]) for m in cur.movements] == [
        ("p-coke", "add", 24, "Compra recibida"),
        ("p-milk", "add", 12, "Compra recibida"),
    ]
    assert registry.get("u-cashier").get("products", "p-coke") is None


@pytest.mark.parametrize("status", ["received", "cancelled"])
def test_receive_rejects_non_pending_purchase(monkeypatch, tmp_path, status):
    cur, _ = _patch(monkeypatch, tmp_path, purchase_status=status)
    with pytest.raises(HTTPException) as ex:
        purchases_router.receive_purchase("po-1", user=USER)
    assert ex.value.status_code == 400
    assert cur.stock == {"p-coke": 10, "p-milk": 0}
    assert cur.movements == []


def test_receive_missing_purchase_is_404(monkeypatch, tmp_path):
    _patch(monkeypatch, tmp_path)
    with pytest.raises(HTTPException) as ex:
        purchases_router.receive_purchase("po-404", user=USER)
    assert ex.value.status_code == 404


def test_only_pending_purchases_can_be_deleted(monkeypatch, tmp_path):
    cur, _ = _patch(monkeypatch, tmp_path, purchase_status="received")
    with pytest.raises(HTTPException) as ex:
        purchases_router.delete_purchase("po-1", user=USER)
    assert ex.value.status_code == 400
    assert cur.deleted == []

    cur, _ = _patch(monkeypatch, tmp_path)
    assert purchases_router.delete_purchase("po-1", user=USER) == {"ok": True}
    assert cur.deleted == ["po-1"]


def test_status_endpoint_refuses_to_mark_received(monkeypatch, tmp_path):
    _patch(monkeypatch, tmp_path)
    with pytest.raises(HTTPException) as ex:
        purchases_router.update_purchase_status("po-1", PurchaseStatusIn(status="received"), user=USER)
    assert ex.value.status_code == 400
