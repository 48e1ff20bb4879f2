from contextlib import nullcontext
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from kioskpro.app.routers import pos as pos_router
from kioskpro.app.routers import sales as sales_router
from kioskpro.app.routers.pos import CartAddIn, CartQuantityIn, CheckoutIn
from kioskpro.app.store import StoreRegistry

USER = {"user_id": "u-cashier", "name": "Ana", "email": "ana@kiosko.com", "role": "cashier"}

COKE = "3f6c1e2a-8b4d-4c1e-9a57-0d2b6f1e4a01"
BREAD = "9e5b3d71-2a4c-4f86-a1d9-6b0e8c2f5a05"
OLD = "b81e0f63-9c2a-4d7b-8e14-2c6a9d5f7e03"

PRODUCTS = {
    COKE: {"id": COKE, "name": "Coca-Cola 500ml", "barcode": "7501055300013", "price": Decimal("2.50"), "stock": 10, "active": True},
    BREAD: {"id": BREAD, "name": "Pan Bimbo", "barcode": "7501000111206", "price": Decimal("3.20"), "stock": 4, "active": True},
    OLD: {"id": OLD, "name": "Chicle", "barcode": "7500000000001", "price": Decimal("0.50"), "stock": 5, "active": False},
}


class _FakeCursor:
    def __init__(self):
        self.products = {k: dict(v) for k, v in PRODUCTS.items()}
        self.sales = []
        self._rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if text.startswith("select id, name, barcode, price, stock, active from products where id = %s"):
            row = self.products.get(params[0])
            self._rows = [dict(row)] if row else []
            return
        if text.startswith("select id, name, barcode, price, stock, active from products where barcode = %s"):
            self._rows = [dict(r) for r in self.products.values() if r["barcode"] == params[0]][:1]
            return
        if text.startswith("select id, name, price, stock, active from products"):
            self._rows = [dict(self.products[i]) for i in sorted(params[0]) if i in self.products]
            return
        if text.startswith("select id from cash_registers where status = 'open'"):
            self._rows = [{"id": "r-1"}]
            return
        if text.startswith("insert into sales"):
            total, method, cashier_id, register_id = params
            row = {
                "id": "s-1",
                "total": total,
                "payment_method": method,
                "cashier_id": cashier_id,
                "cash_register_id": register_id,
                "created_at": datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc),
            }
            self.sales.append(row)
            self._rows = [dict(row)]
            return
        if text.startswith("update products set stock"):
            qty, pid = params
            self.products[pid]["stock"] = max(0, self.products[pid]["stock"] - qty)
            return
        if text.startswith("insert into sale_items") or text.startswith("insert into stock_movements"):
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


@pytest.fixture
def till(monkeypatch, tmp_path):
    cur = _FakeCursor()
    registry = StoreRegistry(tmp_path)
    for module in (pos_router, sales_router):
        monkeypatch.setattr(module, "get_conn", lambda: _DummyConn(cur))
        monkeypatch.setattr(module, "get_registry", lambda: registry)
    return cur, registry


def test_scanning_a_barcode_twice_bumps_the_quantity(till):
    pos_router.add_cart_item(CartAddIn(barcode=" 7501055300013 "), user=USER)
    out = pos_router.add_cart_item(CartAddIn(barcode="7501055300013", quantity=2), user=USER)

    assert out["cart"]["count"] == 3
    assert out["cart"]["total"] == Decimal("7.50")
    assert len(out["cart"]["items"]) == 1


def test_inactive_product_cannot_be_added(till):
    with pytest.raises(HTTPException) as ex:
        pos_router.add_cart_item(CartAddIn(product_id=OLD), user=USER)
    assert ex.value.status_code == 404


def test_add_requires_product_id_or_barcode():
    with pytest.raises(ValueError):
        CartAddIn(barcode="   ")


def test_zero_quantity_removes_the_line(till):
    pos_router.add_cart_item(CartAddIn(product_id=COKE), user=USER)
    out = pos_router.set_cart_quantity(COKE, CartQuantityIn(quantity=0), user=USER)
    assert out["cart"] == {"items": [], "count": 0, "total": Decimal("0.00")}


def test_checkout_empty_cart_is_400(till):
    with pytest.raises(HTTPException) as ex:
        pos_router.checkout(CheckoutIn(), user=USER)
    assert ex.value.status_code == 400


def test_cash_checkout_returns_change_and_clears_cart(till):
    cur, registry = till
    pos_router.add_cart_item(CartAddIn(product_id=COKE, quantity=2), user=USER)
    pos_router.add_cart_item(CartAddIn(product_id=BREAD), user=USER)

    out = pos_router.checkout(CheckoutIn(amount_received=Decimal("10")), user=USER)

    assert out["sale"]["total"] == Decimal("8.20")
    assert out["change"] == Decimal("1.80")
    store = registry.get("u-cashier")
    assert store.cart == []
    assert store.sales[-1]["id"] == "s-1"
    assert cur.products[COKE]["stock"] == 8


def test_cash_checkout_without_amount_means_exact_change(till):
    pos_router.add_cart_item(CartAddIn(product_id=BREAD), user=USER)
    out = pos_router.checkout(CheckoutIn(), user=USER)
    assert out["change"] == Decimal("0.00")


def test_short_cash_payment_keeps_the_cart(till):
    _, registry = till
    pos_router.add_cart_item(CartAddIn(product_id=COKE, quantity=2), user=USER)

    with pytest.raises(HTTPException) as ex:
        pos_router.checkout(CheckoutIn(amount_received=Decimal("4.99")), user=USER)

    assert ex.value.status_code == 400
    assert registry.get("u-cashier").cart_count() == 2


def test_card_checkout_has_no_change(till):
    pos_router.add_cart_item(CartAddIn(product_id=COKE), user=USER)
    out = pos_router.checkout(CheckoutIn(payment_method="card"), user=USER)
    assert out["change"] is None
    assert out["sale"]["payment_method"] == "card"


def test_checkout_reprices_stale_cart_lines(till):
    cur, _ = till
    pos_router.add_cart_item(CartAddIn(product_id=COKE), user=USER)
    cur.products[COKE]["price"] = Decimal("3.00")

    out = pos_router.checkout(CheckoutIn(payment_method="card"), user=USER)

    assert out["sale"]["total"] == Decimal("3.00")


def test_cart_quantity_accepts_an_upper_case_product_id(till):
    pos_router.add_cart_item(CartAddIn(product_id=COKE), user=USER)

    out = pos_router.set_cart_quantity(COKE.upper(), CartQuantityIn(quantity=4), user=USER)
    assert out["cart"]["count"] == 4

    out = pos_router.remove_cart_item(COKE.upper(), user=USER)
    assert out["cart"]["items"] == []
