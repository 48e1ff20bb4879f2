from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from psycopg import errors as pg_errors
from pydantic import BaseModel, Field
from typing import List, Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..money import money
from ..store import get_registry
from ..validation import Name, StockOperation
from .audit import log_audit
from .inventory import record_movement

router = APIRouter(prefix="/products", tags=["products"])

PRODUCT_SELECT = """
    SELECT p.id, p.name, p.barcode, p.category_id, p.price, p.cost, p.stock, p.min_stock,
           p.image_url, p.active, p.created_at, p.updated_at,
           c.name AS category_name, c.color AS category_color
    FROM products p
    LEFT JOIN categories c ON c.id = p.category_id
"""
SEARCH_LIMIT = 50


class ProductIn(BaseModel):
    name: Name
    barcode: Optional[str] = None
    category_id: Optional[str] = None
    price: Decimal = Field(ge=0)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    stock: int = Field(default=0, ge=0)
    min_stock: int = Field(default=5, ge=0)
    image_url: Optional[str] = None
    active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[Name] = None
    barcode: Optional[str] = None
    category_id: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    min_stock: Optional[int] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    active: Optional[bool] = None


class BulkIdsIn(BaseModel):
    ids: List[str] = Field(min_length=1)


class BulkStatusIn(BulkIdsIn):
    active: bool


class StockUpdateIn(BaseModel):
    quantity: int = Field(ge=0)
    operation: StockOperation
    reason: Optional[str] = None


def _get_product(cur, product_id: str):
    cur.execute(PRODUCT_SELECT + " WHERE p.id = %s", (product_id,))
    return cur.fetchone()


@router.get("", dependencies=[Depends(require_permission("products:read"))])
def list_products(active: Optional[bool] = None, category_id: Optional[str] = None):
    where = ["1=1"]
    params = []
    if active is not None:
        where.append("p.active = %s")
        params.append(active)
    if category_id:
        where.append("p.category_id = %s")
        params.append(category_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PRODUCT_SELECT + f" WHERE {' AND '.join(where)} ORDER BY p.created_at DESC", params)
            return {"products": cur.fetchall()}


@router.get("/search", dependencies=[Depends(require_permission("products:read"))])
def search_products(q: str = ""):
    q = (q or "").strip()
    if not q:
        return {"products": []}
    pattern = f"%{q}%"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                PRODUCT_SELECT + " WHERE p.name ILIKE %s OR p.barcode ILIKE %s ORDER BY p.name LIMIT %s",
                (pattern, pattern, SEARCH_LIMIT),
            )
            return {"products": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("products:read"))])
def product_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*)::int AS total,
                       COUNT(*) FILTER (WHERE active = true)::int AS active,
                       COUNT(*) FILTER (WHERE stock > 0 AND stock <= min_stock)::int AS low_stock,
                       COUNT(*) FILTER (WHERE stock = 0)::int AS out_of_stock,
                       COALESCE(SUM(price * stock), 0) AS total_value,
                       COALESCE(SUM(cost * stock), 0) AS total_cost
                FROM products
                """
            )
            row = cur.fetchone()
            row["total_value"] = money(row["total_value"])
            row["total_cost"] = money(row["total_cost"])
            return row


@router.get("/barcode/{barcode}", dependencies=[Depends(require_permission("products:read"))])
def get_product_by_barcode(barcode: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PRODUCT_SELECT + " WHERE p.barcode = %s ORDER BY p.active DESC LIMIT 1", (barcode.strip(),))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


@router.get("/{product_id}", dependencies=[Depends(require_permission("products:read"))])
def get_product(product_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _get_product(cur, product_id)
            if not row:
                raise HTTPException(status_code=404, detail="product not found")
            return {"product": row}


@router.post("", dependencies=[Depends(require_permission("products:write"))])
def create_product(data: ProductIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO products (id, name, barcode, category_id, price, cost, stock, min_stock, image_url, active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        data.name,
                        (data.barcode or "").strip() or None,
                        data.category_id or None,
                        data.price,
                        data.cost,
                        data.stock,
                        data.min_stock,
                        (data.image_url or "").strip() or None,
                        data.active,
                    ),
                )
                product_id = cur.fetchone()["id"]
                if data.stock > 0:
                    record_movement(cur, product_id, "add", data.stock, "Stock inicial", user["user_id"])
                log_audit(cur, user["user_id"], "product.create", "product", product_id, None, data.model_dump())
                return {"product": _get_product(cur, product_id)}


@router.patch("/{product_id}", dependencies=[Depends(require_permission("products:write"))])
def update_product(product_id: str, data: ProductUpdate, user=Depends(get_current_user)):
    payload = data.model_dump(exclude_unset=True)
    # name/price/cost/active can't be cleared, only changed.
    for k in ("name", "price", "cost", "min_stock", "active"):
        if k in payload and payload[k] is None:
            payload.pop(k)
    for k in ("barcode", "image_url", "category_id"):
        if k in payload:
            payload[k] = (payload[k] or "").strip() or None
    if not payload:
        return {"ok": True}
    fields = []
    params = []
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(product_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE products
                SET {', '.join(fields)}, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
            log_audit(cur, user["user_id"], "product.update", "product", product_id, None, payload)
            row = _get_product(cur, product_id)
    get_registry().invalidate("products", product_id)
    return {"product": row}


@router.post("/{product_id}/stock", dependencies=[Depends(require_permission("inventory:write"))])
def update_product_stock(product_id: str, data: StockUpdateIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT stock FROM products WHERE id = %s FOR UPDATE", (product_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="product not found")
                before = int(row["stock"] or 0)
                if data.operation == "set":
                    after = data.quantity
                elif data.operation == "add":
                    after = before + data.quantity
                else:
                    after = max(0, before - data.quantity)
                cur.execute("UPDATE products SET stock = %s, updated_at = now() WHERE id = %s", (after, product_id))
                delta = after - before
                if delta:
                    reason = (data.reason or "").strip() or f"Stock ({data.operation})"
                    record_movement(cur, product_id, "add" if delta > 0 else "subtract", abs(delta), reason, user["user_id"])
                log_audit(cur, user["user_id"], "product.stock", "product", product_id, {"stock": before}, {"stock": after})
                product = _get_product(cur, product_id)
    get_registry().invalidate("products", product_id)
    return {"product": product}


def _delete_products(cur, ids: List[str]) -> int:
    try:
        cur.execute("DELETE FROM products WHERE id = ANY(%s::uuid[])", (ids,))
    except pg_errors.ForeignKeyViolation:
        raise HTTPException(status_code=409, detail="product is referenced by purchases; deactivate it instead")
    return cur.rowcount


@router.delete("/{product_id}", dependencies=[Depends(require_permission("products:write"))])
def delete_product(product_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if not _delete_products(cur, [product_id]):
                raise HTTPException(status_code=404, detail="product not found")
            log_audit(cur, user["user_id"], "product.delete", "product", product_id)
    get_registry().invalidate("products", product_id)
    return {"ok": True}


@router.post("/bulk-delete", dependencies=[Depends(require_permission("products:write"))])
def bulk_delete_products(data: BulkIdsIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            deleted = _delete_products(cur, data.ids)
            log_audit(cur, user["user_id"], "product.bulk_delete", "product", None, None, {"ids": data.ids})
    registry = get_registry()
    for pid in data.ids:
        registry.invalidate("products", pid)
    return {"deleted": deleted}


@router.post("/bulk-status", dependencies=[Depends(require_permission("products:write"))])
def bulk_update_status(data: BulkStatusIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE products
                SET active = %s, updated_at = now()
                WHERE id = ANY(%s::uuid[])
                """,
                (data.active, data.ids),
            )
            updated = cur.rowcount
            log_audit(cur, user["user_id"], "product.bulk_status", "product", None, None,
                      {"ids": data.ids, "active": data.active})
    registry = get_registry()
    for pid in data.ids:
        registry.invalidate("products", pid)
    return {"updated": updated}
