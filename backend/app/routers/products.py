from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..db import get_conn
from ..deps import record_change, write_response
from ..records import insert_row, list_rows, require_row, soft_delete, update_row
from ..validation import Name, Sku

router = APIRouter(prefix="/api/products", tags=["products"])

TABLE = "products"


class ProductIn(BaseModel):
    name: Name
    sku: Optional[Sku] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    manufacturer_id: Optional[str] = None
    unit: str = "unit"
    price: float = 0
    cost: float = 0
    quantity: float = 0
    requires_prescription: bool = False


class ProductUpdate(BaseModel):
    name: Optional[Name] = None
    sku: Optional[Sku] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    manufacturer_id: Optional[str] = None
    unit: Optional[str] = None
    price: Optional[float] = None
    cost: Optional[float] = None
    requires_prescription: Optional[bool] = None


class StockAdjustIn(BaseModel):
    # Signed: positive receives stock, negative takes it out.
    delta: float
    reason: Optional[str] = None


def _check_amounts(values: dict):
    for key in ("price", "cost", "quantity"):
        if values.get(key) is not None and values[key] < 0:
            raise HTTPException(status_code=400, detail=f"{key} must be >= 0")


@router.get("")
def list_products(search: str = "", limit: int = 100):
    with get_conn() as conn:
        rows = list_rows(conn, TABLE, ("name", "sku", "barcode", "category"), search, limit)
        return {"success": True, "data": rows}


@router.get("/{product_id}")
def get_product(product_id: str):
    with get_conn() as conn:
        return {"success": True, "data": require_row(conn, TABLE, product_id, "product")}


@router.post("")
def create_product(data: ProductIn, request: Request):
    values = data.model_dump()
    _check_amounts(values)
    values["requires_prescription"] = 1 if values["requires_prescription"] else 0
    with get_conn() as conn:
        if values.get("manufacturer_id"):
            require_row(conn, "manufacturers", values["manufacturer_id"], "manufacturer")
        row = insert_row(conn, TABLE, values)
        qid = record_change(conn, TABLE, "create", row)
    return write_response(request, row, [qid], status_code=201)


@router.put("/{product_id}")
def update_product(product_id: str, data: ProductUpdate, request: Request):
    payload = data.model_dump(exclude_none=True)
    _check_amounts(payload)
    if "requires_prescription" in payload:
        payload["requires_prescription"] = 1 if payload["requires_prescription"] else 0
    with get_conn() as conn:
        require_row(conn, TABLE, product_id, "product")
        row = update_row(conn, TABLE, product_id, payload)
        qid = record_change(conn, TABLE, "update", row)
    return write_response(request, row, [qid])


@router.patch("/{product_id}/stock")
def adjust_stock(product_id: str, data: StockAdjustIn, request: Request):
    with get_conn() as conn:
        current = require_row(conn, TABLE, product_id, "product")
        new_qty = float(current.get("quantity") or 0) + float(data.delta)
        if new_qty < 0:
            raise HTTPException(status_code=400, detail="insufficient stock")
        row = update_row(conn, TABLE, product_id, {"quantity": new_qty})
        qid = record_change(conn, TABLE, "update", row)
    return write_response(request, row, [qid])


@router.delete("/{product_id}")
def delete_product(product_id: str, request: Request):
    with get_conn() as conn:
        require_row(conn, TABLE, product_id, "product")
        row = soft_delete(conn, TABLE, product_id)
        qid = record_change(conn, TABLE, "delete", row)
    return write_response(request, {"id": product_id}, [qid])
