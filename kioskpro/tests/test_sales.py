from contextlib import nullcontext
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from kioskpro.app.routers import sales as sales_router
from kioskpro.app.routers.sales import SaleIn, SaleItemIn, create_sale_tx
from kioskpro.app.store import StoreRegistry

USER = {"user_id": "u-cashier", "name": "Ana", "email": "ana@kiosko.com", "role": "cashier"}

COKE = "3f6c1e2a-8b4d-4c1e-9a57-0d2b6f1e4a01"
CHIPS = "7a2d9c44-1f3b-4e8a-b6c2-5e9f0a1d3b02"
OLD = "b81e0f63-9c2a-4d7b-8e14-2c6a9d5f7e03"
MISSING = "c4d7a1b8-6e3f-4a92-bd05-8f1c2e7a9b04"


class _FakeCursor:
    """Stand-in for the products, cash_registers, sales and sale_items tables."""

    def __init__(self, products=None, registers=None):
        self.products = products or {
            COKE: {"id": COKE, "name": "Coca-Cola 500ml", "price": Decimal("2.50"), "stock": 10, "active": True},
            CHIPS: {"id": CHIPS, "name": "Papas Lays", "price": Decimal("1.75"), "stock": 1, "active": True},
            OLD: {"id": OLD, "name": "Chicle", "price": Decimal("0.50"), "stock": 5, "active": False},
        }
        self.registers = registers if registers is not None else {"r-1": {"id": "r-1", "status": "open"}}
        self.sales = []
        self.sale_items = []
        self.movements = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select id, name, price, stock, active from products"):
            assert "for update" in text
            ids = params[0]
            self._rows = [dict(self.products[i]) for i in sorted(ids) if i in self.products]
            return
        if text.startswith("select id, status from cash_registers"):
            row = self.registers.get(params[0])
            self._rows = [dict(row)] if row else []
            return
        if text.startswith("select id from cash_registers where status = 'open'"):
            self._rows = [{"id": r["id"]} for r in self.registers.values() if r["status"] == "open"][:1]
            return
        if text.startswith("insert into sales"):
            total, method, cashier_id, register_id = params
            row = {
                "id": "s-new",
                "total": total,
                "payment_method": method,
                "cashier_id": cashier_id,
                "cash_register_id": register_id,
                "created_at": datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc),
            }
            self.sales.append(row)
            self._rows = [dict(row)]
            return
        if text.startswith("insert into sale_items"):
            self.sale_items.append(params)
            return
        if text.startswith("update products set stock = greatest(0, stock - %s)"):
            qty, pid = params
            self.products[pid]["stock"] = max(0, self.products[pid]["stock"] - qty)
            return
        if text.startswith("insert into stock_movements"):
            self.movements.append(params)
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


def _items(*pairs):
    return [SaleItemIn(product_id=pid, quantity=qty) for pid, qty in pairs]


def test_sale_is_priced_from_the_product_table():
    cur = _FakeCursor()
    sale = create_sale_tx(cur, _items((COKE, 2), (CHIPS, 1)), "card", "u-cashier")

    assert sale["total"] == Decimal("6.75")
    assert sale["cash_register_id"] == "r-1"
    assert [(it["product_id"], it["unit_price"], it["subtotal"]) for it in sale["items"]] == [
        (COKE, Decimal("2.50"), Decimal("5.00")),
        (CHIPS, Decimal("1.75"), Decimal("1.75")),
    ]
    assert [p[1:] for p in cur.sale_items] == [
        (COKE, 2, Decimal("2.50"), Decimal("5.00")),
        (CHIPS, 1, Decimal("1.75"), Decimal("1.75")),
    ]


def test_repeated_lines_collapse_into_one_quantity():
    cur = _FakeCursor()
    sale = create_sale_tx(cur, _items((COKE, 1), (COKE, 2)), "cash", "u-cashier")

    assert len(sale["items"]) == 1
    assert sale["items"][0]["quantity"] == 3
    assert sale["total"] == Decimal("7.50")
    assert cur.products[COKE]["stock"] == 7


def test_stock_never_goes_negative_and_movement_logs_what_was_taken():
    cur = _FakeCursor()
    create_sale_tx(cur, _items((CHIPS, 3)), "cash", "u-cashier")

    assert cur.products[CHIPS]["stock"] == 0
    assert cur.movements == [(CHIPS, "subtract", 1, "Venta", "u-cashier")]


def test_out_of_stock_line_sells_without_a_movement():
    cur = _FakeCursor()
    cur.products[CHIPS]["stock"] = 0
    create_sale_tx(cur, _items((CHIPS, 1)), "cash", "u-cashier")
    assert cur.movements == []
    assert len(cur.sale_items) == 1


@pytest.mark.parametrize("pid", [OLD, MISSING])
def test_inactive_or_unknown_product_is_rejected(pid):
    cur = _FakeCursor()
    with pytest.raises(HTTPException) as ex:
        create_sale_tx(cur, _items((COKE, 1), (pid, 1)), "cash", "u-cashier")
    assert ex.value.status_code == 400
    assert pid in ex.value.detail
    assert cur.sales == []


def test_product_ids_match_regardless_of_case():
    cur = _FakeCursor()
    sale = create_sale_tx(cur, _items((COKE.upper(), 1), ("{" + COKE + "}", 2)), "cash", "u-cashier")

    assert [(it["product_id"], it["quantity"]) for it in sale["items"]] == [(COKE, 3)]
    assert cur.products[COKE]["stock"] == 7


def test_malformed_product_id_is_400():
    cur = _FakeCursor()
    with pytest.raises(HTTPException) as ex:
        create_sale_tx(cur, _items(("not-a-product", 1)), "cash", "u-cashier")
    assert ex.value.status_code == 400
    assert "not-a-product" in ex.value.detail
    assert cur.sales == []


def test_explicit_closed_register_is_rejected():
    cur = _FakeCursor(registers={"r-1": {"id": "r-1", "status": "closed"}})
    with pytest.raises(HTTPException) as ex:
        create_sale_tx(cur, _items((COKE, 1)), "cash", "u-cashier", cash_register_id="r-1")
    assert ex.value.status_code == 400
    assert ex.value.detail == "cash register is closed"


def test_sale_without_open_register_is_recorded_unattached():
    cur = _FakeCursor(registers={})
    sale = create_sale_tx(cur, _items((COKE, 1)), "transfer", "u-cashier")
    assert sale["cash_register_id"] is None
    assert sale["payment_method"] == "transfer"


def test_create_sale_endpoint_drops_cached_products(monkeypatch, tmp_path):
    cur = _FakeCursor()
    registry = StoreRegistry(tmp_path)
    registry.get("u-admin").add("products", {"id": COKE, "stock": 10})
    monkeypatch.setattr(sales_router, "get_conn", lambda: _DummyConn(cur))
    monkeypatch.setattr(sales_router, "get_registry", lambda: registry)

    out = sales_router.create_sale(SaleIn(items=[{"product_id": COKE, "quantity": 4}]), user=USER)

    assert out["sale"]["total"] == Decimal("10.00")
    assert out["sale"]["cashier_id"] == "u-cashier"
    assert registry.get("u-admin").get("products", COKE) is None


def test_sale_payload_needs_at_least_one_positive_line():
    with pytest.raises(ValueError):
        SaleIn(items=[])
    with pytest.raises(ValueError):
        SaleIn(items=[{"product_id": COKE, "quantity": 0}])
