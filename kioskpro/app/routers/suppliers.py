from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import degrade_on_db_error
from ..money import money
from ..periods import business_today, business_tz, month_start, local_midnight
from ..store import get_registry
from ..validation import Name
from .audit import log_audit

router = APIRouter(prefix="/suppliers", tags=["suppliers"])

SUPPLIER_COLUMNS = "id, name, ruc, phone, email, address, active, created_at, updated_at"

# Cancelled orders never turned into stock or spend.
_COUNTED = "status <> 'cancelled'"


class SupplierIn(BaseModel):
    name: Name
    ruc: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    active: bool = True


class SupplierUpdate(BaseModel):
    name: Optional[Name] = None
    ruc: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    active: Optional[bool] = None


def _clean(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


@router.get("", dependencies=[Depends(require_permission("suppliers:read"))])
def list_suppliers(active: Optional[bool] = None, search: Optional[str] = None):
    where = ["1=1"]
    params = []
    if active is not None:
        where.append("s.active = %s")
        params.append(active)
    if search and search.strip():
        where.append("(s.name ILIKE %s OR s.ruc ILIKE %s OR s.email ILIKE %s)")
        pattern = f"%{search.strip()}%"
        params.extend([pattern, pattern, pattern])
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT s.id, s.name, s.ruc, s.phone, s.email, s.address, s.active, s.created_at,
                       COALESCE(ps.total_purchases, 0)::int AS total_purchases,
                       COALESCE(ps.total_amount, 0) AS total_amount,
                       ps.last_purchase
                FROM suppliers s
                LEFT JOIN (
                  SELECT supplier_id,
                         COUNT(*) AS total_purchases,
                         SUM(total) AS total_amount,
                         MAX(created_at) AS last_purchase
                  FROM purchases
                  WHERE {_COUNTED}
                  GROUP BY supplier_id
                ) ps ON ps.supplier_id = s.id
                WHERE {' AND '.join(where)}
                ORDER BY s.name
                """,
                params,
            )
            return {"suppliers": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("suppliers:read"))])
@degrade_on_db_error(
    "suppliers.stats",
    {
        "total": 0, "active": 0, "inactive": 0, "total_purchases": 0, "total_amount": 0,
        "avg_purchase_amount": 0, "top_supplier": None, "purchases_this_month": 0,
    },
)
def supplier_stats():
    tz = business_tz()
    month_from = local_midnight(month_start(business_today(tz)), tz)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*)::int AS total,
                       COUNT(*) FILTER (WHERE active = true)::int AS active,
                       COUNT(*) FILTER (WHERE active = false)::int AS inactive
                FROM suppliers
                """
            )
            stats = cur.fetchone()
            cur.execute(
                f"""
                SELECT COUNT(*)::int AS total_purchases,
                       COALESCE(SUM(total), 0) AS total_amount,
                       COALESCE(AVG(total), 0) AS avg_purchase_amount,
                       COUNT(*) FILTER (WHERE created_at >= %s)::int AS purchases_this_month
                FROM purchases
                WHERE {_COUNTED}
                """,
                (month_from,),
            )
            stats.update(cur.fetchone())
            cur.execute(
                f"""
                SELECT s.name
                FROM suppliers s
                JOIN purchases p ON p.supplier_id = s.id AND p.{_COUNTED}
                GROUP BY s.id, s.name
                ORDER BY SUM(p.total) DESC
                LIMIT 1
                """
            )
            top = cur.fetchone()
            stats["top_supplier"] = top["name"] if top else None
            stats["total_amount"] = money(stats["total_amount"])
            stats["avg_purchase_amount"] = money(stats["avg_purchase_amount"])
            return stats


@router.get("/top", dependencies=[Depends(require_permission("suppliers:read"))])
@degrade_on_db_error("suppliers.top", {"suppliers": []})
def top_suppliers(limit: int = 5):
    limit = max(1, min(limit, 50))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT s.id, s.name,
                       COUNT(p.id)::int AS total_purchases,
                       COALESCE(SUM(p.total), 0) AS total_amount
                FROM suppliers s
                LEFT JOIN purchases p ON p.supplier_id = s.id AND p.{_COUNTED}
                WHERE s.active = true
                GROUP BY s.id, s.name
                ORDER BY total_amount DESC, s.name
                LIMIT %s
                """,
                (limit,),
            )
            return {"suppliers": cur.fetchall()}


@router.get("/{supplier_id}", dependencies=[Depends(require_permission("suppliers:read"))])
def get_supplier(supplier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT s.id, s.name, s.ruc, s.phone, s.email, s.address, s.active, s.created_at, s.updated_at,
                       (SELECT COUNT(*)::int FROM purchases p WHERE p.supplier_id = s.id AND p.{_COUNTED}) AS total_purchases,
                       (SELECT COALESCE(SUM(total), 0) FROM purchases p WHERE p.supplier_id = s.id AND p.{_COUNTED}) AS total_amount,
                       (SELECT MAX(created_at) FROM purchases p WHERE p.supplier_id = s.id) AS last_purchase
                FROM suppliers s
                WHERE s.id = %s
                """,
                (supplier_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="supplier not found")
            return {"supplier": row}


@router.get("/{supplier_id}/purchases", dependencies=[Depends(require_permission("purchases:read"))])
@degrade_on_db_error("suppliers.purchases", {"purchases": []})
def supplier_purchases(supplier_id: str, limit: int = 50):
    limit = max(1, min(limit, 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.supplier_id, s.name AS supplier_name, p.total, p.status, p.created_at,
                       (SELECT COUNT(*)::int FROM purchase_items pi WHERE pi.purchase_id = p.id) AS items_count
                FROM purchases p
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                WHERE p.supplier_id = %s
                ORDER BY p.created_at DESC
                LIMIT %s
                """,
                (supplier_id, limit),
            )
            return {"purchases": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("suppliers:write"))])
def create_supplier(data: SupplierIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO suppliers (id, name, ruc, phone, email, address, active)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                RETURNING {SUPPLIER_COLUMNS}
                """,
                (data.name, _clean(data.ruc), _clean(data.phone), _clean(data.email), _clean(data.address), data.active),
            )
            row = cur.fetchone()
            log_audit(cur, user["user_id"], "supplier.create", "supplier", row["id"], None, data.model_dump())
            return {"supplier": row}


@router.patch("/{supplier_id}", dependencies=[Depends(require_permission("suppliers:write"))])
def update_supplier(supplier_id: str, data: SupplierUpdate, user=Depends(get_current_user)):
    payload = data.model_dump(exclude_unset=True)
    for k in ("ruc", "phone", "email", "address"):
        if k in payload:
            payload[k] = _clean(payload[k])
    for k in ("name", "active"):
        if k in payload and payload[k] is None:
            payload.pop(k)
    if not payload:
        return {"ok": True}
    fields = []
    params = []
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(supplier_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE suppliers
                SET {', '.join(fields)}, updated_at = now()
                WHERE id = %s
                RETURNING {SUPPLIER_COLUMNS}
                """,
                params,
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="supplier not found")
            log_audit(cur, user["user_id"], "supplier.update", "supplier", supplier_id, None, payload)
    get_registry().invalidate("suppliers", supplier_id)
    return {"supplier": row}


def _set_active(supplier_id: str, active_sql: str, action: str, user) -> dict:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE suppliers
                SET active = {active_sql}, updated_at = now()
                WHERE id = %s
                RETURNING {SUPPLIER_COLUMNS}
                """,
                (supplier_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="supplier not found")
            log_audit(cur, user["user_id"], action, "supplier", supplier_id, None, {"active": row["active"]})
    get_registry().invalidate("suppliers", supplier_id)
    return row


@router.delete("/{supplier_id}", dependencies=[Depends(require_permission("suppliers:write"))])
def delete_supplier(supplier_id: str, user=Depends(get_current_user)):
    # Soft delete: purchase history keeps pointing at the row.
    _set_active(supplier_id, "false", "supplier.delete", user)
    return {"ok": True}


@router.post("/{supplier_id}/toggle", dependencies=[Depends(require_permission("suppliers:write"))])
def toggle_supplier(supplier_id: str, user=Depends(get_current_user)):
    return {"supplier": _set_active(supplier_id, "NOT active", "supplier.toggle", user)}
