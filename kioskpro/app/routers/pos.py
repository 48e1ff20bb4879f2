from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..money import money
from ..store import get_registry
from ..validation import PaymentMethod
from .sales import SaleItemIn, after_sale, create_sale_tx

router = APIRouter(prefix="/pos", tags=["pos"], dependencies=[Depends(require_permission("pos:use"))])


class CartAddIn(BaseModel):
    product_id: Optional[str] = None
    barcode: Optional[str] = None
    quantity: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _one_key(self):
        if not (self.product_id or (self.barcode or "").strip()):
            raise ValueError("product_id or barcode is required")
        return self


class CartQuantityIn(BaseModel):
    quantity: int


class CheckoutIn(BaseModel):
    payment_method: PaymentMethod = "cash"
    amount_received: Optional[Decimal] = Field(default=None, ge=0)
    cash_register_id: Optional[str] = None


def _lookup_product(cur, product_id: Optional[str], barcode: Optional[str]):
    if product_id:
        cur.execute(
            "SELECT id, name, barcode, price, stock, active FROM products WHERE id = %s",
            (product_id,),
        )
    else:
        cur.execute(
            """
            SELECT id, name, barcode, price, stock, active
            FROM products
            WHERE barcode = %s
            ORDER BY active DESC
            LIMIT 1
            """,
            (barcode.strip(),),
        )
    return cur.fetchone()


@router.get("/cart")
def get_cart(user=Depends(get_current_user)):
    return {"cart": get_registry().get(user["user_id"]).cart_payload()}


@router.post("/cart/items")
def add_cart_item(data: CartAddIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            product = _lookup_product(cur, data.product_id, data.barcode)
    if not product or not product["active"]:
        raise HTTPException(status_code=404, detail="product not found")
    registry = get_registry()
    store = registry.get(user["user_id"])
    store.add("products", product)
    store.add_to_cart(product, data.quantity)
    registry.save(user["user_id"])
    return {"cart": store.cart_payload()}


@router.patch("/cart/items/{product_id}")
def set_cart_quantity(product_id: str, data: CartQuantityIn, user=Depends(get_current_user)):
    registry = get_registry()
    store = registry.get(user["user_id"])
    store.update_cart_quantity(product_id, data.quantity)
    registry.save(user["user_id"])
    return {"cart": store.cart_payload()}


@router.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, user=Depends(get_current_user)):
    registry = get_registry()
    store = registry.get(user["user_id"])
    store.remove_from_cart(product_id)
    registry.save(user["user_id"])
    return {"cart": store.cart_payload()}


@router.delete("/cart")
def clear_cart(user=Depends(get_current_user)):
    registry = get_registry()
    store = registry.get(user["user_id"])
    store.clear_cart()
    registry.save(user["user_id"])
    return {"cart": store.cart_payload()}


@router.post("/checkout", dependencies=[Depends(require_permission("sales:write"))])
def checkout(data: CheckoutIn, user=Depends(get_current_user)):
    registry = get_registry()
    store = registry.get(user["user_id"])
    if not store.cart:
        raise HTTPException(status_code=400, detail="cart is empty")
    items = [SaleItemIn(product_id=line.product_id, quantity=line.quantity) for line in store.cart]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                sale = create_sale_tx(cur, items, data.payment_method, user["user_id"], data.cash_register_id)
                change = None
                if data.payment_method == "cash":
                    received = money(data.amount_received if data.amount_received is not None else sale["total"])
                    if received < sale["total"]:
                        # Raising here rolls the sale back.
                        raise HTTPException(
                            status_code=400,
                            detail=f"amount received {received} is less than the total {sale['total']}",
                        )
                    change = received - sale["total"]
    after_sale(sale)
    store.clear_cart()
    store.remember_sale(
        {"id": sale["id"], "total": sale["total"], "payment_method": sale["payment_method"], "created_at": sale["created_at"]}
    )
    registry.save(user["user_id"])
    return {"sale": sale, "change": change}
