import uuid
from decimal import Decimal

from kioskpro.app.store import AppStore, StoreRegistry, id_key


def _product(pid="p1", price="2.50", name="Coca Cola 500ml"):
    return {"id": pid, "name": name, "barcode": "7891234567890", "price": Decimal(price)}


def test_add_to_cart_increments_existing_line():
    store = AppStore()
    store.add_to_cart(_product())
    store.add_to_cart(_product(), quantity=2)
    assert len(store.cart) == 1
    assert store.cart[0].quantity == 3
    assert store.cart_count() == 3
    assert store.cart_total() == Decimal("7.50")


def test_update_cart_quantity_removes_at_zero():
    store = AppStore()
    store.add_to_cart(_product("p1"))
    store.add_to_cart(_product("p2", "1.80", "Leche Entera 1L"))
    store.update_cart_quantity("p1", 4)
    assert store.cart[0].quantity == 4
    store.update_cart_quantity("p2", 0)
    assert [line.product_id for line in store.cart] == ["p1"]
    store.clear_cart()
    assert store.cart == []
    assert store.cart_total() == Decimal("0.00")


def test_collection_add_merges_and_update_reports_missing():
    store = AppStore()
    store.add("products", {"id": "p1", "name": "A", "stock": 5})
    store.add("products", {"id": "p1", "stock": 4})
    assert store.products == [{"id": "p1", "name": "A", "stock": 4}]
    assert store.update("products", "p1", {"name": "B"}) is True
    assert store.update("products", "missing", {"name": "B"}) is False
    assert store.remove("products", "p1") is True
    assert store.get("products", "p1") is None


def test_uuid_ids_match_whatever_their_spelling():
    pid = uuid.UUID("3f6c1e2a-8b4d-4c1e-9a57-0d2b6f1e4a01")
    store = AppStore()
    store.add("products", {"id": pid, "name": "A"})
    store.add_to_cart(_product(pid))

    assert store.get("products", str(pid).upper()) is not None
    store.update_cart_quantity(str(pid).upper(), 2)
    assert store.cart[0].product_id == str(pid)
    assert store.cart[0].quantity == 2
    assert store.remove("products", "{" + str(pid) + "}") is True
    assert id_key(" p1 ") == "p1"


def test_cash_register_snapshot_open_and_close():
    store = AppStore()
    store.open_cash_register("r1", Decimal("100.00"))
    assert store.cash_register.status == "open"
    store.close_cash_register(Decimal("150.00"))
    assert store.cash_register.status == "closed"
    assert store.cash_register.closing_amount == Decimal("150.00")


def test_registry_persists_and_reloads_per_user(tmp_path):
    reg = StoreRegistry(tmp_path)
    store = reg.get("user-1")
    store.add_to_cart(_product(), quantity=2)
    reg.save("user-1")

    fresh = StoreRegistry(tmp_path).get("user-1")
    assert fresh.cart_count() == 2
    assert fresh.cart[0].unit_price == Decimal("2.50")
    assert StoreRegistry(tmp_path).get("user-2").cart == []


def test_corrupt_store_file_starts_empty(tmp_path):
    (tmp_path / "user-1.json").write_text("{not json", encoding="utf-8")
    store = StoreRegistry(tmp_path).get("user-1")
    assert store.cart == []


def test_invalidate_drops_cached_entity_from_every_loaded_store(tmp_path):
    reg = StoreRegistry(tmp_path)
    for uid in ("u1", "u2"):
        reg.get(uid).add("products", {"id": "p1", "name": "A", "price": "1.00"})
    reg.get("u3")
    assert reg.invalidate("products", "p1") == 2
    assert reg.get("u1").get("products", "p1") is None
    assert StoreRegistry(tmp_path).get("u2").get("products", "p1") is None
