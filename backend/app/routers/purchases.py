from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..db import get_conn, new_id, now
from ..deps import record_change, write_response
from ..records import get_row, insert_row, list_rows, require_row, update_row
from ..validation import PurchaseStatus

router = APIRouter(prefix="/api/purchases", tags=["purchases"])

TABLE = "purchases"
FINAL_STATUSES = {"received", "canceled"}


class PurchaseItemIn(BaseModel):
    product_id: str
    quantity: float
    unit_cost: float


class PurchaseIn(BaseModel):
    supplier_id: str
    invoice_no: Optional[str] = None
    status: PurchaseStatus = "draft"
    notes: Optional[str] = None
    items: List[PurchaseItemIn]


class PurchaseStatusIn(BaseModel):
    status: PurchaseStatus


def _items(conn, purchase_id: str):
    rows = conn.execute(
        "SELECT * FROM purchase_items WHERE purchase_id = ? ORDER BY created_at ASC, rowid ASC",
        (purchase_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def _receive_stock(conn, items) -> List[str]:
    """Increase product stock for every line. Returns the queued sync ids."""
    queued = []
    for it in items:
        product = require_row(conn, "products", it["product_id"], "product")
        qty = float(product.get("quantity") or 0) + float(it["quantity"])
        row = update_row(conn, "products", product["id"], {"quantity": qty, "cost": float(it["unit_cost"])})
        queued.append(record_change(conn, "products", "update", row))
    return queued


@router.get("")
def list_purchases(search: str = "", limit: int = 100):
    with get_conn() as conn:
        rows = list_rows(conn, TABLE, ("invoice_no", "status", "notes"), search, limit, order_by="created_at DESC")
        return {"success": True, "data": rows}


@router.get("/{purchase_id}")
def get_purchase(purchase_id: str):
    with get_conn() as conn:
        purchase = require_row(conn, TABLE, purchase_id, "purchase")
        purchase["items"] = _items(conn, purchase_id)
        return {"success": True, "data": purchase}


@router.post("")
def create_purchase(data: PurchaseIn, request: Request):
    if not data.items:
        raise HTTPException(status_code=400, detail="a purchase needs at least one item")
    for it in data.items:
        if it.quantity <= 0:
            raise HTTPException(status_code=400, detail="item quantity must be > 0")
        if it.unit_cost < 0:
            raise HTTPException(status_code=400, detail="item unit_cost must be >= 0")

    queued = []
    with get_conn() as conn:
        require_row(conn, "suppliers", data.supplier_id, "supplier")
        for it in data.items:
            require_row(conn, "products", it.product_id, "product")

        total = sum(float(it.quantity) * float(it.unit_cost) for it in data.items)
        purchase = insert_row(
            conn,
            TABLE,
            {
                "supplier_id": data.supplier_id,
                "invoice_no": (data.invoice_no or "").strip() or None,
                "status": data.status,
                "total": round(total, 4),
                "notes": (data.notes or "").strip() or None,
            },
        )
        queued.append(record_change(conn, TABLE, "create", purchase))

        ts = now()
        for it in data.items:
            line = {
                "id": new_id(),
                "purchase_id": purchase["id"],
                "product_id": it.product_id,
                "quantity": float(it.quantity),
                "unit_cost": float(it.unit_cost),
                "line_total": round(float(it.quantity) * float(it.unit_cost), 4),
                "created_at": ts,
                "updated_at": ts,
            }
            conn.execute(
                """
                INSERT INTO purchase_items (id, purchase_id, product_id, quantity, unit_cost, line_total, created_at, updated_at)
                VALUES (:id, :purchase_id, :product_id, :quantity, :unit_cost, :line_total, :created_at, :updated_at)
                """,
                line,
            )
            queued.append(record_change(conn, "purchase_items", "create", line))

        if data.status == "received":
            queued.extend(_receive_stock(conn, _items(conn, purchase["id"])))

        purchase["items"] = _items(conn, purchase["id"])
    return write_response(request, purchase, queued, status_code=201)


@router.put("/{purchase_id}/status")
def update_purchase_status(purchase_id: str, data: PurchaseStatusIn, request: Request):
    queued = []
    with get_conn() as conn:
        purchase = require_row(conn, TABLE, purchase_id, "purchase")
        if purchase["status"] == data.status:
            purchase["items"] = _items(conn, purchase_id)
            return {"success": True, "data": purchase}
        if purchase["status"] in FINAL_STATUSES:
            raise HTTPException(status_code=400, detail=f"purchase is already {purchase['status']}")
        row = update_row(conn, TABLE, purchase_id, {"status": data.status})
        queued.append(record_change(conn, TABLE, "update", row))
        if data.status == "received":
            queued.extend(_receive_stock(conn, _items(conn, purchase_id)))
        row["items"] = _items(conn, purchase_id)
    return write_response(request, row, queued)


@router.delete("/{purchase_id}")
def delete_purchase(purchase_id: str, request: Request):
    with get_conn() as conn:
        purchase = get_row(conn, TABLE, purchase_id)
        if not purchase:
            raise HTTPException(status_code=404, detail="purchase not found")
        if purchase["status"] == "received":
            raise HTTPException(status_code=400, detail="received purchases cannot be deleted")
        row = update_row(conn, TABLE, purchase_id, {"is_active": 0})
        qid = record_change(conn, TABLE, "delete", row)
    return write_response(request, {"id": purchase_id}, [qid])
