"""
Per-user client store.

Holds what a till keeps between screens: the cart, a snapshot of the open cash
register and small caches of catalog rows. The database stays the single source
of truth: cached rows are refreshed on read and dropped through `invalidate()`
whenever a router writes the underlying entity, and checkout reprices every cart
line from the products table.
"""
import os
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .config import settings
from .logs import json_log
from .money import money

COLLECTIONS = ("products", "categories", "suppliers", "users", "sales")
RECENT_SALES = 50


def id_key(value) -> str:
    """Canonical text for an id; UUIDs match regardless of case or braces."""
    text = str(value).strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text


class CartLine(BaseModel):
    product_id: str
    name: str
    barcode: Optional[str] = None
    unit_price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class CashRegisterSnapshot(BaseModel):
    id: str
    opening_amount: Decimal
    opened_at: datetime
    status: Literal["open", "closed"] = "open"
    closing_amount: Optional[Decimal] = None
    closed_at: Optional[datetime] = None


class AppStore(BaseModel):
    products: List[Dict[str, Any]] = Field(default_factory=list)
    categories: List[Dict[str, Any]] = Field(default_factory=list)
    suppliers: List[Dict[str, Any]] = Field(default_factory=list)
    users: List[Dict[str, Any]] = Field(default_factory=list)
    sales: List[Dict[str, Any]] = Field(default_factory=list)
    cart: List[CartLine] = Field(default_factory=list)
    cash_register: Optional[CashRegisterSnapshot] = None

    # Collections.

    def _collection(self, name: str) -> List[Dict[str, Any]]:
        if name not in COLLECTIONS:
            raise KeyError(f"unknown collection: {name}")
        return getattr(self, name)

    def get(self, collection: str, entity_id) -> Optional[Dict[str, Any]]:
        key = id_key(entity_id)
        for row in self._collection(collection):
            if id_key(row.get("id")) == key:
                return row
        return None

    def add(self, collection: str, entity: Dict[str, Any]) -> None:
        if "id" not in entity:
            raise ValueError("entity must have an id")
        if self.get(collection, entity["id"]) is not None:
            self.update(collection, entity["id"], entity)
            return
        self._collection(collection).append(dict(entity))

    def update(self, collection: str, entity_id, patch: Dict[str, Any]) -> bool:
        row = self.get(collection, entity_id)
        if row is None:
            return False
        row.update({k: v for k, v in patch.items() if k != "id"})
        return True

    def remove(self, collection: str, entity_id) -> bool:
        rows = self._collection(collection)
        key = id_key(entity_id)
        kept = [r for r in rows if id_key(r.get("id")) != key]
        removed = len(kept) != len(rows)
        rows[:] = kept
        return removed

    def remember_sale(self, sale: Dict[str, Any]) -> None:
        self.add("sales", sale)
        del self.sales[:-RECENT_SALES]

    # Cart.

    def add_to_cart(self, product: Dict[str, Any], quantity: int = 1) -> CartLine:
        pid = id_key(product["id"])
        for line in self.cart:
            if line.product_id == pid:
                line.quantity += quantity
                return line
        line = CartLine(
            product_id=pid,
            name=product["name"],
            barcode=product.get("barcode"),
            unit_price=Decimal(str(product["price"])),
            quantity=quantity,
        )
        self.cart.append(line)
        return line

    def remove_from_cart(self, product_id) -> None:
        pid = id_key(product_id)
        self.cart = [line for line in self.cart if line.product_id != pid]

    def update_cart_quantity(self, product_id, quantity: int) -> None:
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return
        pid = id_key(product_id)
        for line in self.cart:
            if line.product_id == pid:
                line.quantity = quantity
                return

    def clear_cart(self) -> None:
        self.cart = []

    def cart_total(self) -> Decimal:
        return money(sum((line.subtotal for line in self.cart), Decimal("0")))

    def cart_count(self) -> int:
        return sum(line.quantity for line in self.cart)

    # Cash register.

    def open_cash_register(self, register_id, opening_amount, opened_at: Optional[datetime] = None) -> None:
        self.cash_register = CashRegisterSnapshot(
            id=str(register_id),
            opening_amount=Decimal(str(opening_amount)),
            opened_at=opened_at or datetime.now(timezone.utc),
        )

    def close_cash_register(self, closing_amount, closed_at: Optional[datetime] = None) -> None:
        if self.cash_register is None:
            return
        self.cash_register.status = "closed"
        self.cash_register.closing_amount = Decimal(str(closing_amount))
        self.cash_register.closed_at = closed_at or datetime.now(timezone.utc)

    def cart_payload(self) -> Dict[str, Any]:
        return {
            "items": [
                {**line.model_dump(), "subtotal": line.subtotal}
                for line in self.cart
            ],
            "count": self.cart_count(),
            "total": self.cart_total(),
        }


class StoreRegistry:
    """Loads, caches and persists one AppStore per user as JSON files."""

    def __init__(self, directory) -> None:
        self.directory = Path(directory)
        self._stores: Dict[str, AppStore] = {}
        self._lock = threading.RLock()

    def _path(self, user_id) -> Path:
        safe = "".join(ch for ch in str(user_id) if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError("invalid user id")
        return self.directory / f"{safe}.json"

    def get(self, user_id) -> AppStore:
        key = str(user_id)
        with self._lock:
            store = self._stores.get(key)
            if store is not None:
                return store
            path = self._path(key)
            store = AppStore()
            if path.exists():
                try:
                    store = AppStore.model_validate_json(path.read_text(encoding="utf-8"))
                except ValueError as exc:
                    # A corrupt file only loses the local draft, never data of record.
                    json_log("warning", "store.load_failed", path=str(path), error=str(exc))
            self._stores[key] = store
            return store

    def save(self, user_id) -> None:
        key = str(user_id)
        with self._lock:
            store = self._stores.get(key)
            if store is None:
                return
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self._path(key)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(store.model_dump_json(), encoding="utf-8")
            os.replace(tmp, path)

    def invalidate(self, collection: str, entity_id) -> int:
        """Drop a cached entity from every loaded store; returns how many held it."""
        hits = 0
        with self._lock:
            for user_id, store in self._stores.items():
                if store.remove(collection, entity_id):
                    hits += 1
                    self.save(user_id)
        return hits


_registry: Optional[StoreRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> StoreRegistry:
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = StoreRegistry(settings.store_dir)
    return _registry
