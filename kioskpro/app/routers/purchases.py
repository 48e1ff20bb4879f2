from datetime import date, timedelta
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import degrade_on_db_error, json_log
from ..money import money, pct_change
from ..periods import add_months, business_today, business_tz, local_midnight, month_start
from ..store import get_registry
from ..validation import PurchaseStatus
from .audit import log_audit
from .inventory import record_movement

router = APIRouter(prefix="/purchases", tags=["purchases"])

RECEIVE_REASON = "Compra recibida"

PURCHASE_SELECT = """
    SELECT p.id, p.supplier_id, p.total, p.status, p.notes, p.created_at, p.updated_at,
           s.name AS supplier_name, s.ruc AS supplier_ruc,
           (SELECT COUNT(*)::int FROM purchase_items pi WHERE pi.purchase_id = p.id) AS items_count
    FROM purchases p
    LEFT JOIN suppliers s ON s.id = p.supplier_id
"""


class PurchaseItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    cost: Decimal = Field(ge=0)


class PurchaseIn(BaseModel):
    supplier_id: str
    notes: Optional[str] = None
    items: List[PurchaseItemIn] = Field(min_length=1)


class PurchaseNotesIn(BaseModel):
    notes: Optional[str] = None


class PurchaseStatusIn(BaseModel):
    status: PurchaseStatus


def purchase_total(items) -> Decimal:
    return money(sum((Decimal(it.quantity) * it.cost for it in items), Decimal("0")))


@router.get("", dependencies=[Depends(require_permission("purchases:read"))])
def list_purchases(
    status: Optional[Literal["all", "pending", "received", "cancelled"]] = None,
    supplier_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = None,
):
    tz = business_tz()
    where = ["1=1"]
    params = []
    if status and status != "all":
        where.append("p.status = %s")
        params.append(status)
    if supplier_id:
        where.append("p.supplier_id = %s")
        params.append(supplier_id)
    if date_from:
        where.append("p.created_at >= %s")
        params.append(local_midnight(date_from, tz))
    if date_to:
        # Inclusive: the whole `date_to` business day.
        where.append("p.created_at < %s")
        params.append(local_midnight(date_to + timedelta(days=1), tz))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        where.append("(p.id::text ILIKE %s OR s.name ILIKE %s OR p.notes ILIKE %s)")
        params.extend([pattern, pattern, pattern])
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PURCHASE_SELECT + f" WHERE {' AND '.join(where)} ORDER BY p.created_at DESC", params)
            return {"purchases": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error(
    "purchases.stats",
    {
        "total": 0, "pending": 0, "received": 0, "cancelled": 0,
        "total_amount": 0, "received_amount": 0, "pending_amount": 0, "avg_order_value": 0,
        "this_month_orders": 0, "this_month_amount": 0, "last_month_orders": 0, "last_month_amount": 0,
        "growth_percent": 0,
    },
)
def purchase_stats():
    tz = business_tz()
    this_month = month_start(business_today(tz))
    this_from = local_midnight(this_month, tz)
    last_from = local_midnight(add_months(this_month, -1), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*)::int AS total,
                       COUNT(*) FILTER (WHERE status = 'pending')::int AS pending,
                       COUNT(*) FILTER (WHERE status = 'received')::int AS received,
                       COUNT(*) FILTER (WHERE status = 'cancelled')::int AS cancelled,
                       COALESCE(SUM(total), 0) AS total_amount,
                       COALESCE(SUM(total) FILTER (WHERE status = 'received'), 0) AS received_amount,
                       COALESCE(SUM(total) FILTER (WHERE status = 'pending'), 0) AS pending_amount,
                       COALESCE(AVG(total) FILTER (WHERE status <> 'cancelled'), 0) AS avg_order_value,
                       COUNT(*) FILTER (WHERE status <> 'cancelled' AND created_at >= %s)::int AS this_month_orders,
                       COALESCE(SUM(total) FILTER (WHERE status <> 'cancelled' AND created_at >= %s), 0) AS this_month_amount,
                       COUNT(*) FILTER (WHERE status <> 'cancelled' AND created_at >= %s AND created_at < %s)::int AS last_month_orders,
                       COALESCE(SUM(total) FILTER (WHERE status <> 'cancelled' AND created_at >= %s AND created_at < %s), 0) AS last_month_amount
                FROM purchases
                """,
                (this_from, this_from, last_from, this_from, last_from, this_from),
            )
            stats = cur.fetchone()
            for k in ("total_amount", "received_amount", "pending_amount", "avg_order_value",
                      "this_month_amount", "last_month_amount"):
                stats[k] = money(stats[k])
            stats["growth_percent"] = pct_change(stats["this_month_amount"], stats["last_month_amount"])
            return stats


@router.get("/by-supplier", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("purchases.by_supplier", {"suppliers": []})
def purchases_by_supplier():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS supplier_id, s.name AS supplier_name,
                       COUNT(p.id)::int AS orders_count,
                       COALESCE(SUM(p.total), 0) AS total_amount,
                       COALESCE(AVG(p.total), 0) AS avg_order_value,
                       MAX(p.created_at) AS last_purchase
                FROM suppliers s
                JOIN purchases p ON p.supplier_id = s.id AND p.status <> 'cancelled'
                WHERE s.active = true
                GROUP BY s.id, s.name
                ORDER BY total_amount DESC
                """
            )
            rows = cur.fetchall()
            for r in rows:
                r["avg_order_value"] = money(r["avg_order_value"])
            return {"suppliers": rows}


@router.get("/by-month", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("purchases.by_month", {"months": []})
def purchases_by_month(months: int = 12):
    months = max(1, min(months, 36))
    tz = business_tz()
    first = add_months(month_start(business_today(tz)), -(months - 1))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT to_char(date_trunc('month', created_at AT TIME ZONE %s), 'YYYY-MM') AS month,
                       COUNT(*)::int AS orders_count,
                       COALESCE(SUM(total), 0) AS total_amount
                FROM purchases
                WHERE created_at >= %s AND status <> 'cancelled'
                GROUP BY 1
                """,
                (tz.key, local_midnight(first, tz)),
            )
            by_key = {r["month"]: r for r in cur.fetchall()}
    out = []
    for i in range(months):
        key = add_months(first, i).strftime("%Y-%m")
        r = by_key.get(key)
        out.append(
            {
                "month": key,
                "orders_count": r["orders_count"] if r else 0,
                "total_amount": money(r["total_amount"] if r else 0),
            }
        )
    return {"months": out}


@router.get("/recent", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("purchases.recent", {"purchases": []})
def recent_purchases(limit: int = 5):
    limit = max(1, min(limit, 100))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PURCHASE_SELECT + " ORDER BY p.created_at DESC LIMIT %s", (limit,))
            return {"purchases": cur.fetchall()}


@router.get("/pending-count", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("purchases.pending_count", {"count": 0})
def pending_purchases_count():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*)::int AS c FROM purchases WHERE status = 'pending'")
            return {"count": cur.fetchone()["c"]}


@router.get("/top-products", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("purchases.top_products", {"products": []})
def most_purchased_products(limit: int = 10):
    limit = max(1, min(limit, 100))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT pi.product_id, pr.name AS product_name,
                       SUM(pi.quantity)::int AS total_quantity,
                       SUM(pi.quantity * pi.cost) AS total_amount,
                       COUNT(DISTINCT pi.purchase_id)::int AS orders_count
                FROM purchase_items pi
                JOIN purchases p ON p.id = pi.purchase_id
                JOIN products pr ON pr.id = pi.product_id
                WHERE p.status <> 'cancelled'
                GROUP BY pi.product_id, pr.name
                ORDER BY total_quantity DESC
                LIMIT %s
                """,
                (limit,),
            )
            return {"products": cur.fetchall()}


def _items(cur, purchase_id: str):
    cur.execute(
        """
        SELECT pi.id, pi.purchase_id, pi.product_id, pr.name AS product_name, pr.barcode AS product_barcode,
               pi.quantity, pi.cost, (pi.quantity * pi.cost) AS subtotal
        FROM purchase_items pi
        LEFT JOIN products pr ON pr.id = pi.product_id
        WHERE pi.purchase_id = %s
        ORDER BY pi.created_at, pi.id
        """,
        (purchase_id,),
    )
    return cur.fetchall()


@router.get("/{purchase_id}", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase(purchase_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PURCHASE_SELECT + " WHERE p.id = %s", (purchase_id,))
            purchase = cur.fetchone()
            if not purchase:
                raise HTTPException(status_code=404, detail="purchase not found")
            purchase["items"] = _items(cur, purchase_id)
            return {"purchase": purchase}


@router.get("/{purchase_id}/items", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase_items(purchase_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"items": _items(cur, purchase_id)}


@router.post("", dependencies=[Depends(require_permission("purchases:write"))])
def create_purchase(data: PurchaseIn, user=Depends(get_current_user)):
    total = purchase_total(data.items)
    notes = (data.notes or "").strip() or None
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM suppliers WHERE id = %s", (data.supplier_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=400, detail="supplier not found")
                cur.execute(
                    """
                    INSERT INTO purchases (id, supplier_id, total, status, notes)
                    VALUES (gen_random_uuid(), %s, %s, 'pending', %s)
                    RETURNING id, supplier_id, total, status, notes, created_at, updated_at
                    """,
                    (data.supplier_id, total, notes),
                )
                purchase = cur.fetchone()
                for it in data.items:
                    cur.execute(
                        """
                        INSERT INTO purchase_items (id, purchase_id, product_id, quantity, cost)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        """,
                        (purchase["id"], it.product_id, it.quantity, it.cost),
                    )
                log_audit(
                    cur, user["user_id"], "purchase.create", "purchase", purchase["id"], None,
                    {"supplier_id": data.supplier_id, "total": total, "items": len(data.items)},
                )
    purchase["items_count"] = len(data.items)
    return {"purchase": purchase}


@router.patch("/{purchase_id}", dependencies=[Depends(require_permission("purchases:write"))])
def update_purchase_notes(purchase_id: str, data: PurchaseNotesIn, user=Depends(get_current_user)):
    notes = (data.notes or "").strip() or None
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE purchases
                SET notes = %s, updated_at = now()
                WHERE id = %s
                RETURNING id, supplier_id, total, status, notes, created_at, updated_at
                """,
                (notes, purchase_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="purchase not found")
            log_audit(cur, user["user_id"], "purchase.update", "purchase", purchase_id, None, {"notes": notes})
            return {"purchase": row}


def _lock_purchase(cur, purchase_id: str):
    cur.execute("SELECT id, status FROM purchases WHERE id = %s FOR UPDATE", (purchase_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="purchase not found")
    return row


@router.patch("/{purchase_id}/status", dependencies=[Depends(require_permission("purchases:write"))])
def update_purchase_status(purchase_id: str, data: PurchaseStatusIn, user=Depends(get_current_user)):
    if data.status == "received":
        raise HTTPException(status_code=400, detail="use the receive action to mark a purchase as received")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _lock_purchase(cur, purchase_id)
                if current["status"] == "received":
                    raise HTTPException(status_code=400, detail="a received purchase cannot change status")
                cur.execute(
                    """
                    UPDATE purchases
                    SET status = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id, supplier_id, total, status, notes, created_at, updated_at
                    """,
                    (data.status, purchase_id),
                )
                row = cur.fetchone()
                log_audit(
                    cur, user["user_id"], "purchase.status", "purchase", purchase_id,
                    {"status": current["status"]}, {"status": data.status},
                )
                return {"purchase": row}


@router.post("/{purchase_id}/receive", dependencies=[Depends(require_permission("purchases:write"))])
def receive_purchase(purchase_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _lock_purchase(cur, purchase_id)
                if current["status"] != "pending":
                    raise HTTPException(status_code=400, detail=f"purchase is {current['status']}, only pending purchases can be received")
                cur.execute(
                    """
                    SELECT product_id, quantity
                    FROM purchase_items
                    WHERE purchase_id = %s
                    ORDER BY created_at, id
                    """,
                    (purchase_id,),
                )
                items = cur.fetchall()
                received = []
                for it in items:
                    if not it["product_id"]:
                        continue
                    cur.execute(
                        """
                        UPDATE products
                        SET stock = stock + %s, updated_at = now()
                        WHERE id = %s
                        """,
                        (it["quantity"], it["product_id"]),
                    )
                    record_movement(cur, it["product_id"], "add", it["quantity"], RECEIVE_REASON, user["user_id"])
                    received.append(it["product_id"])
                cur.execute(
                    """
                    UPDATE purchases
                    SET status = 'received', updated_at = now()
                    WHERE id = %s
                    """,
                    (purchase_id,),
                )
                log_audit(
                    cur, user["user_id"], "purchase.receive", "purchase", purchase_id,
                    {"status": "pending"}, {"status": "received", "items": len(received)},
                )
    json_log("info", "purchase.received", purchase_id=str(purchase_id), items=len(received))
    registry = get_registry()
    for pid in received:
        registry.invalidate("products", pid)
    return {"ok": True, "items_received": len(received)}


@router.delete("/{purchase_id}", dependencies=[Depends(require_permission("purchases:write"))])
def delete_purchase(purchase_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _lock_purchase(cur, purchase_id)
                if current["status"] != "pending":
                    raise HTTPException(status_code=400, detail="only pending purchases can be deleted")
                cur.execute("DELETE FROM purchases WHERE id = %s", (purchase_id,))
                log_audit(cur, user["user_id"], "purchase.delete", "purchase", purchase_id, {"status": "pending"}, None)
                return {"ok": True}
