from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..store import get_registry
from ..validation import HexColor, Name
from .audit import log_audit

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: Name
    color: HexColor = "#22D3EE"
    icon: Optional[str] = "folder"


class CategoryUpdate(BaseModel):
    name: Optional[Name] = None
    color: Optional[HexColor] = None
    icon: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("products:read"))])
def list_categories():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.color, c.icon, c.created_at, c.updated_at,
                       COUNT(p.id)::int AS product_count
                FROM categories c
                LEFT JOIN products p ON p.category_id = c.id
                GROUP BY c.id
                ORDER BY c.name
                """
            )
            return {"categories": cur.fetchall()}


def _product_count(cur, category_id: str) -> int:
    cur.execute("SELECT COUNT(*)::int AS c FROM products WHERE category_id = %s", (category_id,))
    return cur.fetchone()["c"]


@router.get("/{category_id}/product-count", dependencies=[Depends(require_permission("products:read"))])
def category_product_count(category_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"count": _product_count(cur, category_id)}


@router.post("", dependencies=[Depends(require_permission("products:write"))])
def create_category(data: CategoryIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO categories (id, name, color, icon)
                VALUES (gen_random_uuid(), %s, %s, %s)
                RETURNING id, name, color, icon, created_at, updated_at
                """,
                (data.name, data.color, (data.icon or "").strip() or "folder"),
            )
            row = cur.fetchone()
            log_audit(cur, user["user_id"], "category.create", "category", row["id"], None, data.model_dump())
            return {"category": row}


@router.patch("/{category_id}", dependencies=[Depends(require_permission("products:write"))])
def update_category(category_id: str, data: CategoryUpdate, user=Depends(get_current_user)):
    payload = data.model_dump(exclude_none=True)
    if not payload:
        return {"ok": True}
    fields = []
    params = []
    for k, v in payload.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(category_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE categories
                SET {', '.join(fields)}, updated_at = now()
                WHERE id = %s
                RETURNING id, name, color, icon, created_at, updated_at
                """,
                params,
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="category not found")
            log_audit(cur, user["user_id"], "category.update", "category", category_id, None, payload)
    get_registry().invalidate("categories", category_id)
    return {"category": row}


@router.delete("/{category_id}", dependencies=[Depends(require_permission("products:write"))])
def delete_category(category_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                count = _product_count(cur, category_id)
                if count:
                    raise HTTPException(
                        status_code=409,
                        detail=f"category still has {count} product(s); move or delete them first",
                    )
                cur.execute("DELETE FROM categories WHERE id = %s RETURNING name", (category_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="category not found")
                log_audit(cur, user["user_id"], "category.delete", "category", category_id, {"name": row["name"]}, None)
    get_registry().invalidate("categories", category_id)
    return {"ok": True}
