from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror the CHECK constraints in `kioskpro/db/migrations/001_init.sql`.
UserRole = Annotated[Literal["admin", "manager", "cashier"], BeforeValidator(_to_lower_str)]
PaymentMethod = Annotated[Literal["cash", "card", "transfer"], BeforeValidator(_to_lower_str)]
PurchaseStatus = Annotated[Literal["pending", "received", "cancelled"], BeforeValidator(_to_lower_str)]
CashMovementType = Annotated[Literal["income", "expense", "adjustment"], BeforeValidator(_to_lower_str)]
StockOperation = Annotated[Literal["set", "add", "subtract"], BeforeValidator(_to_lower_str)]

# Inventory adjustments are entered with the shop-floor vocabulary.
AdjustmentType = Annotated[
    Literal["entrada", "salida", "ajuste", "merma", "devolucion"],
    BeforeValidator(_to_lower_str),
]
InventoryStatus = Annotated[
    Literal["all", "low_stock", "out_of_stock", "normal", "overstock"],
    BeforeValidator(_to_lower_str),
]
DateRange = Annotated[
    Literal["today", "yesterday", "week", "month", "quarter", "year", "custom"],
    BeforeValidator(_to_lower_str),
]

Email = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$"),
]
HexColor = Annotated[str, BeforeValidator(_strip_str), StringConstraints(pattern=r"^#[0-9A-Fa-f]{6}$")]
Name = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=255)]
Password = Annotated[str, StringConstraints(min_length=6, max_length=128)]
