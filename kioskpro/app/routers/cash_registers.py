from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from psycopg import errors as pg_errors
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import json_log
from ..money import money
from ..store import get_registry
from ..validation import CashMovementType
from .audit import log_audit

router = APIRouter(prefix="/cash-registers", tags=["cash-registers"])

REGISTER_COLUMNS = """
    cr.id, cr.opening_amount, cr.closing_amount, cr.expected_amount, cr.difference, cr.notes,
    cr.cashier_id, u.name AS cashier_name, cr.status, cr.opened_at, cr.closed_at
"""


class RegisterOpenIn(BaseModel):
    opening_amount: Decimal = Field(ge=0)


class RegisterCloseIn(BaseModel):
    closing_amount: Decimal = Field(ge=0)
    notes: Optional[str] = None


class CashMovementIn(BaseModel):
    type: CashMovementType
    amount: Decimal
    description: Optional[str] = None


def expected_cash(opening_amount, cash_sales, movements_total) -> Decimal:
    return money(Decimal(str(opening_amount or 0)) + Decimal(str(cash_sales or 0)) + Decimal(str(movements_total or 0)))


def signed_movement_amount(movement_type: str, amount: Decimal) -> Decimal:
    # Income adds, expense removes, an adjustment carries its own sign.
    if movement_type == "income":
        return abs(amount)
    if movement_type == "expense":
        return -abs(amount)
    return amount


def _register_sales(cur, register_id) -> dict:
    cur.execute(
        """
        SELECT COUNT(*)::int AS sales_count,
               COALESCE(SUM(total), 0) AS total_sales,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'cash'), 0) AS cash_sales,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'card'), 0) AS card_sales,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'transfer'), 0) AS transfer_sales
        FROM sales
        WHERE cash_register_id = %s
        """,
        (register_id,),
    )
    row = cur.fetchone()
    for k in ("total_sales", "cash_sales", "card_sales", "transfer_sales"):
        row[k] = money(row[k])
    return row


def _movements_total(cur, register_id) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(CASE WHEN type = 'expense' THEN -amount ELSE amount END), 0) AS total
        FROM cash_movements
        WHERE cash_register_id = %s
        """,
        (register_id,),
    )
    return money(cur.fetchone()["total"])


def _with_totals(cur, register: dict) -> dict:
    out = dict(register)
    out.update(_register_sales(cur, register["id"]))
    out["movements_total"] = _movements_total(cur, register["id"])
    if register["status"] == "open":
        out["expected_amount"] = expected_cash(register["opening_amount"], out["cash_sales"], out["movements_total"])
    return out


def current_register(cur) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {REGISTER_COLUMNS}
        FROM cash_registers cr
        LEFT JOIN users u ON u.id = cr.cashier_id
        WHERE cr.status = 'open'
        ORDER BY cr.opened_at DESC
        LIMIT 1
        """
    )
    row = cur.fetchone()
    return _with_totals(cur, row) if row else None


@router.get("/current", dependencies=[Depends(require_permission("cash:read"))])
def get_current_register():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"register": current_register(cur)}


@router.post("/open", dependencies=[Depends(require_permission("cash:write"))])
def open_register(data: RegisterOpenIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM cash_registers WHERE status = 'open' LIMIT 1")
            if cur.fetchone():
                raise HTTPException(status_code=400, detail="a cash register is already open")
            try:
                cur.execute(
                    """
                    INSERT INTO cash_registers (id, opening_amount, cashier_id, status, opened_at)
                    VALUES (gen_random_uuid(), %s, %s, 'open', now())
                    RETURNING id, opening_amount, cashier_id, status, opened_at
                    """,
                    (money(data.opening_amount), user["user_id"]),
                )
            except pg_errors.UniqueViolation:
                # Lost the race against another open; cash_registers_one_open holds the line.
                raise HTTPException(status_code=409, detail="a cash register is already open")
            register = cur.fetchone()
            log_audit(cur, user["user_id"], "cash_register.open", "cash_register", register["id"], None,
                      {"opening_amount": register["opening_amount"]})
    json_log("info", "cash_register.opened", register_id=str(register["id"]), opening_amount=str(register["opening_amount"]))
    store = get_registry().get(user["user_id"])
    store.open_cash_register(register["id"], register["opening_amount"], register["opened_at"])
    get_registry().save(user["user_id"])
    return {"register": register}


@router.post("/{register_id}/close", dependencies=[Depends(require_permission("cash:write"))])
def close_register(register_id: str, data: RegisterCloseIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, opening_amount, opened_at
                    FROM cash_registers
                    WHERE id = %s AND status = 'open'
                    FOR UPDATE
                    """,
                    (register_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="open cash register not found")
                sales = _register_sales(cur, register_id)
                movements = _movements_total(cur, register_id)
                expected = expected_cash(row["opening_amount"], sales["cash_sales"], movements)
                closing = money(data.closing_amount)
                difference = closing - expected
                cur.execute(
                    """
                    UPDATE cash_registers
                    SET status = 'closed',
                        closed_at = now(),
                        closing_amount = %s,
                        expected_amount = %s,
                        difference = %s,
                        notes = COALESCE(%s, notes)
                    WHERE id = %s
                    RETURNING id, opening_amount, closing_amount, expected_amount, difference, notes,
                              cashier_id, status, opened_at, closed_at
                    """,
                    (closing, expected, difference, (data.notes or "").strip() or None, register_id),
                )
                register = cur.fetchone()
                log_audit(
                    cur, user["user_id"], "cash_register.close", "cash_register", register_id, None,
                    {"closing_amount": closing, "expected_amount": expected, "difference": difference},
                )
    json_log(
        "info", "cash_register.closed",
        register_id=str(register_id), expected=str(expected), closing=str(closing), difference=str(difference),
    )
    store = get_registry().get(user["user_id"])
    store.close_cash_register(closing, register["closed_at"])
    get_registry().save(user["user_id"])
    register.update(sales)
    register["movements_total"] = movements
    return {"register": register}


@router.get("/history", dependencies=[Depends(require_permission("cash:read"))])
def register_history(limit: int = 30):
    limit = max(1, min(limit, 365))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {REGISTER_COLUMNS},
                       COALESCE(s.sales_count, 0)::int AS sales_count,
                       COALESCE(s.total_sales, 0) AS total_sales,
                       COALESCE(s.cash_sales, 0) AS cash_sales
                FROM cash_registers cr
                LEFT JOIN users u ON u.id = cr.cashier_id
                LEFT JOIN (
                  SELECT cash_register_id,
                         COUNT(*) AS sales_count,
                         SUM(total) AS total_sales,
                         SUM(total) FILTER (WHERE payment_method = 'cash') AS cash_sales
                  FROM sales
                  GROUP BY cash_register_id
                ) s ON s.cash_register_id = cr.id
                ORDER BY cr.opened_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            return {"registers": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("cash:read"))])
def register_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*)::int AS total_registers,
                       COALESCE(SUM(closing_amount), 0) AS total_closing,
                       COALESCE(AVG(difference), 0) AS avg_difference,
                       COALESCE(SUM(difference), 0) AS total_difference,
                       COUNT(*) FILTER (WHERE difference > 0)::int AS surplus_count,
                       COUNT(*) FILTER (WHERE difference < 0)::int AS shortage_count
                FROM cash_registers
                WHERE status = 'closed'
                """
            )
            row = cur.fetchone()
            for k in ("total_closing", "avg_difference", "total_difference"):
                row[k] = money(row[k])
            return row


def _require_open(cur, register_id: str):
    cur.execute("SELECT id, status FROM cash_registers WHERE id = %s", (register_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="cash register not found")
    if row["status"] != "open":
        raise HTTPException(status_code=400, detail="cash register is closed")


@router.post("/{register_id}/movements", dependencies=[Depends(require_permission("cash:write"))])
def add_cash_movement(register_id: str, data: CashMovementIn, user=Depends(get_current_user)):
    amount = money(data.amount)
    if amount == 0:
        raise HTTPException(status_code=400, detail="amount must not be zero")
    if data.type != "adjustment" and amount < 0:
        raise HTTPException(status_code=400, detail=f"{data.type} amount must be positive")
    with get_conn() as conn:
        with conn.cursor() as cur:
            _require_open(cur, register_id)
            cur.execute(
                """
                INSERT INTO cash_movements (id, cash_register_id, type, amount, description, user_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                RETURNING id, cash_register_id, type, amount, description, user_id, created_at
                """,
                (register_id, data.type, amount, (data.description or "").strip() or None, user["user_id"]),
            )
            movement = cur.fetchone()
            log_audit(cur, user["user_id"], "cash_register.movement", "cash_register", register_id, None,
                      {"type": data.type, "amount": amount})
            movement["signed_amount"] = signed_movement_amount(data.type, amount)
            return {"movement": movement}


@router.get("/{register_id}/movements", dependencies=[Depends(require_permission("cash:read"))])
def list_cash_movements(register_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT m.id, m.cash_register_id, m.type, m.amount, m.description,
                       m.user_id, u.name AS user_name, m.created_at
                FROM cash_movements m
                LEFT JOIN users u ON u.id = m.user_id
                WHERE m.cash_register_id = %s
                ORDER BY m.created_at DESC
                """,
                (register_id,),
            )
            rows = cur.fetchall()
            for r in rows:
                r["signed_amount"] = signed_movement_amount(r["type"], Decimal(str(r["amount"])))
            return {"movements": rows}


@router.get("/{register_id}/sales", dependencies=[Depends(require_permission("cash:read"))])
def register_sales(register_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.total, s.payment_method, s.created_at, u.name AS cashier_name,
                       (SELECT COALESCE(SUM(si.quantity), 0)::int FROM sale_items si WHERE si.sale_id = s.id) AS items_count
                FROM sales s
                LEFT JOIN users u ON u.id = s.cashier_id
                WHERE s.cash_register_id = %s
                ORDER BY s.created_at DESC
                """,
                (register_id,),
            )
            return {"sales": cur.fetchall()}
