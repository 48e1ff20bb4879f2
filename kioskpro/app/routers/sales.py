import uuid
from datetime import timedelta
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import json_log
from ..money import money
from ..periods import business_today, business_tz, day_window, days_window, week_start
from ..store import get_registry
from ..validation import PaymentMethod
from .inventory import record_movement

router = APIRouter(prefix="/sales", tags=["sales"])

SALE_REASON = "Venta"


class SaleItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)


class SaleIn(BaseModel):
    payment_method: PaymentMethod = "cash"
    cash_register_id: Optional[str] = None
    items: List[SaleItemIn] = Field(min_length=1)


def _merge_lines(items) -> List[tuple]:
    # One line per product; repeated scans collapse into a quantity.
    merged = {}
    for it in items:
        try:
            pid = str(uuid.UUID(str(it.product_id).strip()))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"invalid product id: {it.product_id}")
        merged[pid] = merged.get(pid, 0) + int(it.quantity)
    return list(merged.items())


def create_sale_tx(cur, items, payment_method: str, cashier_id, cash_register_id=None) -> dict:
    """
    Write a sale on the caller's transaction: price lines from the product table,
    total server-side, attach the open register, decrement stock (never below
    zero) and log one stock movement per line.
    """
    lines = _merge_lines(items)
    if not lines:
        raise HTTPException(status_code=400, detail="sale has no items")
    ids = [pid for pid, _ in lines]
    cur.execute(
        """
        SELECT id, name, price, stock, active
        FROM products
        WHERE id = ANY(%s::uuid[])
        ORDER BY id
        FOR UPDATE
        """,
        (ids,),
    )
    products = {str(r["id"]): r for r in cur.fetchall()}
    missing = [pid for pid in ids if pid not in products or not products[pid]["active"]]
    if missing:
        raise HTTPException(status_code=400, detail=f"unknown or inactive product(s): {', '.join(missing)}")

    priced = []
    total = Decimal("0")
    for pid, qty in lines:
        unit_price = money(products[pid]["price"])
        subtotal = money(unit_price * qty)
        total += subtotal
        priced.append((pid, qty, unit_price, subtotal))
    total = money(total)

    if cash_register_id:
        cur.execute("SELECT id, status FROM cash_registers WHERE id = %s", (cash_register_id,))
        reg = cur.fetchone()
        if not reg:
            raise HTTPException(status_code=400, detail="cash register not found")
        if reg["status"] != "open":
            raise HTTPException(status_code=400, detail="cash register is closed")
    else:
        cur.execute(
            """
            SELECT id
            FROM cash_registers
            WHERE status = 'open'
            ORDER BY opened_at DESC
            LIMIT 1
            """
        )
        reg = cur.fetchone()
        cash_register_id = reg["id"] if reg else None

    cur.execute(
        """
        INSERT INTO sales (id, total, payment_method, cashier_id, cash_register_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        RETURNING id, total, payment_method, cashier_id, cash_register_id, created_at
        """,
        (total, payment_method, cashier_id, cash_register_id),
    )
    sale = cur.fetchone()
    sale_items = []
    for pid, qty, unit_price, subtotal in priced:
        cur.execute(
            """
            INSERT INTO sale_items (id, sale_id, product_id, quantity, unit_price, subtotal)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
            """,
            (sale["id"], pid, qty, unit_price, subtotal),
        )
        stock_before = int(products[pid]["stock"] or 0)
        taken = min(stock_before, qty)
        cur.execute(
            """
            UPDATE products
            SET stock = GREATEST(0, stock - %s), updated_at = now()
            WHERE id = %s
            """,
            (qty, pid),
        )
        if taken:
            record_movement(cur, pid, "subtract", taken, SALE_REASON, cashier_id)
        sale_items.append(
            {
                "product_id": pid,
                "product_name": products[pid]["name"],
                "quantity": qty,
                "unit_price": unit_price,
                "subtotal": subtotal,
            }
        )
    sale["items"] = sale_items
    return sale


def after_sale(sale: dict) -> None:
    json_log(
        "info",
        "sale.created",
        sale_id=str(sale["id"]),
        total=str(sale["total"]),
        payment_method=sale["payment_method"],
        items=len(sale["items"]),
    )
    registry = get_registry()
    for it in sale["items"]:
        registry.invalidate("products", it["product_id"])


@router.post("", dependencies=[Depends(require_permission("sales:write"))])
def create_sale(data: SaleIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                sale = create_sale_tx(cur, data.items, data.payment_method, user["user_id"], data.cash_register_id)
    after_sale(sale)
    return {"sale": sale}


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_sales(limit: int = 50):
    limit = max(1, min(limit, 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.total, s.payment_method, s.cashier_id, u.name AS cashier_name,
                       s.cash_register_id, s.created_at,
                       (SELECT COALESCE(SUM(si.quantity), 0)::int FROM sale_items si WHERE si.sale_id = s.id) AS items_count
                FROM sales s
                LEFT JOIN users u ON u.id = s.cashier_id
                ORDER BY s.created_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            return {"sales": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("sales:read"))])
def sales_stats():
    tz = business_tz()
    today = business_today(tz)
    day_from, day_to = day_window(today, tz)
    week_from, week_to = days_window(week_start(today), today + timedelta(days=1), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) FILTER (WHERE created_at >= %s AND created_at < %s)::int AS today_count,
                       COALESCE(SUM(total) FILTER (WHERE created_at >= %s AND created_at < %s), 0) AS today_total,
                       COUNT(*)::int AS week_count,
                       COALESCE(SUM(total), 0) AS week_total
                FROM sales
                WHERE created_at >= %s AND created_at < %s
                """,
                (day_from, day_to, day_from, day_to, week_from, week_to),
            )
            row = cur.fetchone()
            row["today_total"] = money(row["today_total"])
            row["week_total"] = money(row["week_total"])
            return row


@router.get("/{sale_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_sale(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.total, s.payment_method, s.cashier_id, u.name AS cashier_name,
                       s.cash_register_id, s.created_at
                FROM sales s
                LEFT JOIN users u ON u.id = s.cashier_id
                WHERE s.id = %s
                """,
                (sale_id,),
            )
            sale = cur.fetchone()
            if not sale:
                raise HTTPException(status_code=404, detail="sale not found")
            cur.execute(
                """
                SELECT si.id, si.product_id, p.name AS product_name, p.barcode AS product_barcode,
                       si.quantity, si.unit_price, si.subtotal
                FROM sale_items si
                LEFT JOIN products p ON p.id = si.product_id
                WHERE si.sale_id = %s
                ORDER BY si.created_at, si.id
                """,
                (sale_id,),
            )
            sale["items"] = cur.fetchall()
            return {"sale": sale}
