from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import degrade_on_db_error, json_log
from ..money import money
from ..periods import business_today, business_tz, day_window
from ..store import get_registry
from ..validation import AdjustmentType, InventoryStatus
from .audit import log_audit

router = APIRouter(prefix="/inventory", tags=["inventory"])

# Adjustment types that put goods back on the shelf; every other type takes them off.
INBOUND_ADJUSTMENTS = {"entrada", "devolucion"}
ADJUSTMENT_LABELS = {
    "entrada": "Entrada de mercadería",
    "salida": "Salida de mercadería",
    "ajuste": "Ajuste de inventario",
    "merma": "Merma",
    "devolucion": "Devolución",
}
# Stored movement types vs the labels the stock screens use.
DISPLAY_TYPES = {"add": "entrada", "subtract": "salida"}
STORED_TYPES = {v: k for k, v in DISPLAY_TYPES.items()}

OVERSTOCK_FACTOR = 10
UNCATEGORIZED_NAME = "Sin Categoría"
UNCATEGORIZED_COLOR = "#6B7280"


def apply_adjustment(stock_before: int, adjustment_type: str, quantity: int):
    """
    Returns (stock_after, movement_type, applied_quantity).

    Outbound adjustments never take stock below zero; the applied quantity is
    what actually left the shelf so the movement log stays reconcilable.
    """
    if adjustment_type in INBOUND_ADJUSTMENTS:
        return stock_before + quantity, "add", quantity
    after = max(0, stock_before - quantity)
    return after, "subtract", stock_before - after


def record_movement(cur, product_id, movement_type: str, quantity: int, reason: Optional[str], user_id=None):
    cur.execute(
        """
        INSERT INTO stock_movements (id, product_id, type, quantity, reason, user_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (product_id, movement_type, quantity, reason, user_id),
    )


def stock_status(stock: int, min_stock: int) -> str:
    if stock <= 0:
        return "out_of_stock"
    if stock <= min_stock:
        return "low_stock"
    if stock > min_stock * OVERSTOCK_FACTOR:
        return "overstock"
    return "normal"


def alert_severity(stock: int, min_stock: int) -> str:
    if stock <= 0:
        return "critical"
    if stock <= min_stock * 0.5:
        return "high"
    return "medium"


def inventory_row(row: dict) -> dict:
    stock = int(row.get("stock") or 0)
    min_stock = int(row.get("min_stock") or 0)
    out = dict(row)
    out["max_stock"] = min_stock * OVERSTOCK_FACTOR
    out["status"] = stock_status(stock, min_stock)
    out["stock_value"] = money((row.get("price") or 0) * stock)
    out["cost_value"] = money((row.get("cost") or 0) * stock)
    # Half units round up, so any stock on hand is at least one day.
    out["days_of_stock"] = min(999, (stock + 1) // 2) if stock > 0 else 0
    return out


STATUS_SQL = {
    "low_stock": "p.stock > 0 AND p.stock <= p.min_stock",
    "out_of_stock": "p.stock = 0",
    "normal": f"p.stock > p.min_stock AND p.stock <= p.min_stock * {OVERSTOCK_FACTOR}",
    "overstock": f"p.stock > p.min_stock * {OVERSTOCK_FACTOR}",
}


@router.get("", dependencies=[Depends(require_permission("inventory:read"))])
def list_inventory(
    category_id: Optional[str] = None,
    status: InventoryStatus = "all",
    search: Optional[str] = None,
):
    where = ["p.active = true"]
    params = []
    if category_id:
        where.append("p.category_id = %s")
        params.append(category_id)
    if status != "all":
        where.append(STATUS_SQL[status])
    if search and search.strip():
        where.append("p.name ILIKE %s")
        params.append(f"%{search.strip()}%")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.id, p.name, p.barcode, p.stock, p.min_stock, p.cost, p.price,
                       p.category_id, p.active, c.name AS category_name, c.color AS category_color
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {' AND '.join(where)}
                ORDER BY p.name
                """,
                params,
            )
            return {"products": [inventory_row(r) for r in cur.fetchall()]}


class AdjustIn(BaseModel):
    product_id: str
    type: AdjustmentType
    quantity: int = Field(ge=1)
    reason: Optional[str] = None


@router.post("/adjust", dependencies=[Depends(require_permission("inventory:write"))])
def adjust_stock(data: AdjustIn, user=Depends(get_current_user)):
    reason = (data.reason or "").strip() or ADJUSTMENT_LABELS[data.type]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT stock FROM products WHERE id = %s FOR UPDATE", (data.product_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="product not found")
                before = int(row["stock"] or 0)
                after, movement_type, applied = apply_adjustment(before, data.type, data.quantity)
                cur.execute(
                    """
                    UPDATE products p
                    SET stock = %s, updated_at = now()
                    WHERE p.id = %s
                    RETURNING p.id, p.name, p.barcode, p.stock, p.min_stock, p.cost, p.price, p.category_id, p.active,
                              (SELECT name FROM categories WHERE id = p.category_id) AS category_name,
                              (SELECT color FROM categories WHERE id = p.category_id) AS category_color
                    """,
                    (after, data.product_id),
                )
                product = cur.fetchone()
                record_movement(cur, data.product_id, movement_type, applied, reason, user["user_id"])
                log_audit(
                    cur, user["user_id"], "inventory.adjust", "product", data.product_id,
                    {"stock": before}, {"stock": after, "type": data.type, "quantity": data.quantity},
                )
    json_log("info", "inventory.adjusted", product_id=str(data.product_id), type=data.type, before=before, after=after)
    get_registry().invalidate("products", data.product_id)
    return {
        "product": inventory_row(product),
        "previous_stock": before,
        "new_stock": after,
        "movement_type": DISPLAY_TYPES[movement_type],
    }


@router.get("/movements", dependencies=[Depends(require_permission("inventory:read"))])
@degrade_on_db_error("inventory.movements", {"movements": [], "total": 0})
def list_stock_movements(
    product_id: Optional[str] = None,
    type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    where = ["1=1"]
    params = []
    if product_id:
        where.append("sm.product_id = %s")
        params.append(product_id)
    if type:
        t = type.strip().lower()
        where.append("sm.type = %s")
        params.append(STORED_TYPES.get(t, t))
    clause = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*)::int AS c FROM stock_movements sm WHERE {clause}", params)
            total = cur.fetchone()["c"]
            cur.execute(
                f"""
                SELECT sm.id, sm.product_id, p.name AS product_name, sm.type, sm.quantity,
                       sm.reason, sm.user_id, sm.created_at
                FROM stock_movements sm
                LEFT JOIN products p ON p.id = sm.product_id
                WHERE {clause}
                ORDER BY sm.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            movements = []
            for r in cur.fetchall():
                r["type"] = DISPLAY_TYPES.get(r["type"], r["type"])
                movements.append(r)
            return {"movements": movements, "total": total}


@router.get("/stats", dependencies=[Depends(require_permission("inventory:read"))])
def inventory_stats():
    start, end = day_window(business_today(), business_tz())
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COALESCE(SUM(stock), 0)::int AS total_units,
                       COALESCE(SUM(stock * price), 0) AS total_value,
                       COALESCE(SUM(stock * cost), 0) AS total_cost,
                       COALESCE(SUM(stock * (price - cost)), 0) AS potential_profit,
                       COUNT(*) FILTER (WHERE stock > 0 AND stock <= min_stock)::int AS low_stock,
                       COUNT(*) FILTER (WHERE stock = 0)::int AS out_of_stock,
                       COUNT(*) FILTER (WHERE stock > min_stock * {OVERSTOCK_FACTOR})::int AS overstock,
                       COUNT(DISTINCT category_id)::int AS categories
                FROM products
                WHERE active = true
                """
            )
            stats = cur.fetchone()
            cur.execute(
                """
                SELECT COUNT(*)::int AS total_products,
                       COUNT(*) FILTER (WHERE active = true)::int AS active_products
                FROM products
                """
            )
            stats.update(cur.fetchone())
            cur.execute(
                """
                SELECT COUNT(*)::int AS c
                FROM stock_movements
                WHERE created_at >= %s AND created_at < %s
                """,
                (start, end),
            )
            stats["movements_today"] = cur.fetchone()["c"]
            for k in ("total_value", "total_cost", "potential_profit"):
                stats[k] = money(stats[k])
            return stats


@router.get("/by-category", dependencies=[Depends(require_permission("inventory:read"))])
@degrade_on_db_error("inventory.by_category", {"categories": []})
def inventory_by_category():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id AS category_id,
                       COALESCE(c.name, %s) AS category_name,
                       COALESCE(c.color, %s) AS category_color,
                       COUNT(p.id)::int AS products_count,
                       COALESCE(SUM(p.stock), 0)::int AS total_stock,
                       COALESCE(SUM(p.stock * p.cost), 0) AS total_value,
                       COUNT(*) FILTER (WHERE p.stock <= p.min_stock)::int AS low_stock_count
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.active = true
                GROUP BY c.id, c.name, c.color
                ORDER BY total_value DESC
                """,
                (UNCATEGORIZED_NAME, UNCATEGORIZED_COLOR),
            )
            return {"categories": cur.fetchall()}


@router.get("/alerts", dependencies=[Depends(require_permission("inventory:read"))])
@degrade_on_db_error("inventory.alerts", {"alerts": []})
def inventory_alerts():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, stock, min_stock
                FROM products
                WHERE active = true AND stock <= min_stock
                ORDER BY stock ASC, name
                """
            )
            alerts = []
            for r in cur.fetchall():
                stock = int(r["stock"] or 0)
                min_stock = int(r["min_stock"] or 0)
                alerts.append(
                    {
                        "product_id": r["id"],
                        "product_name": r["name"],
                        "alert_type": "out_of_stock" if stock <= 0 else "low_stock",
                        "current_value": stock,
                        "threshold_value": min_stock,
                        "severity": alert_severity(stock, min_stock),
                    }
                )
            return {"alerts": alerts}


@router.get("/low-stock", dependencies=[Depends(require_permission("inventory:read"))])
@degrade_on_db_error("inventory.low_stock", {"products": []})
def inventory_low_stock():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.barcode, p.stock, p.min_stock, p.cost, p.price,
                       p.category_id, p.active, c.name AS category_name, c.color AS category_color
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.active = true AND p.stock <= p.min_stock
                ORDER BY p.stock ASC
                """
            )
            return {"products": [inventory_row(r) for r in cur.fetchall()]}


class StockLevelsIn(BaseModel):
    min_stock: int = Field(ge=0)


@router.patch("/{product_id}/levels", dependencies=[Depends(require_permission("inventory:write"))])
def update_stock_levels(product_id: str, data: StockLevelsIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE products
                SET min_stock = %s, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (data.min_stock, product_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
            log_audit(cur, user["user_id"], "inventory.levels", "product", product_id, None, {"min_stock": data.min_stock})
    get_registry().invalidate("products", product_id)
    return {"ok": True}


@router.get("/valuation", dependencies=[Depends(require_permission("inventory:read"))])
@degrade_on_db_error(
    "inventory.valuation",
    {"by_category": [], "total_cost": 0, "total_value": 0, "total_margin": 0},
)
def inventory_valuation():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(c.name, %s) AS category,
                       COALESCE(SUM(p.stock * p.cost), 0) AS cost,
                       COALESCE(SUM(p.stock * p.price), 0) AS value
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.active = true
                GROUP BY c.name
                ORDER BY value DESC
                """,
                (UNCATEGORIZED_NAME,),
            )
            by_category = []
            for r in cur.fetchall():
                cost = money(r["cost"])
                value = money(r["value"])
                by_category.append({"category": r["category"], "cost": cost, "value": value, "margin": value - cost})
            total_cost = sum((r["cost"] for r in by_category), money(0))
            total_value = sum((r["value"] for r in by_category), money(0))
            return {
                "by_category": by_category,
                "total_cost": total_cost,
                "total_value": total_value,
                "total_margin": total_value - total_cost,
            }
