from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..db import get_conn
from ..deps import record_change, write_response
from ..records import insert_row, list_rows, require_row, soft_delete, update_row
from ..validation import Name

router = APIRouter(prefix="/api/suppliers", tags=["suppliers"])

TABLE = "suppliers"


class SupplierIn(BaseModel):
    name: Name
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class SupplierUpdate(BaseModel):
    name: Optional[Name] = None
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@router.get("")
def list_suppliers(search: str = "", limit: int = 100):
    with get_conn() as conn:
        rows = list_rows(conn, TABLE, ("name", "contact_person", "email", "phone"), search, limit)
        return {"success": True, "data": rows}


@router.get("/{supplier_id}")
def get_supplier(supplier_id: str):
    with get_conn() as conn:
        return {"success": True, "data": require_row(conn, TABLE, supplier_id, "supplier")}


@router.post("")
def create_supplier(data: SupplierIn, request: Request):
    values = data.model_dump()
    values["contact_person"] = (values.get("contact_person") or "").strip() or None
    with get_conn() as conn:
        row = insert_row(conn, TABLE, values)
        qid = record_change(conn, TABLE, "create", row)
    return write_response(request, row, [qid], status_code=201)


@router.put("/{supplier_id}")
def update_supplier(supplier_id: str, data: SupplierUpdate, request: Request):
    payload = data.model_dump(exclude_none=True)
    if "contact_person" in payload:
        payload["contact_person"] = (payload.get("contact_person") or "").strip() or None
    with get_conn() as conn:
        require_row(conn, TABLE, supplier_id, "supplier")
        row = update_row(conn, TABLE, supplier_id, payload)
        qid = record_change(conn, TABLE, "update", row)
    return write_response(request, row, [qid])


@router.delete("/{supplier_id}")
def delete_supplier(supplier_id: str, request: Request):
    with get_conn() as conn:
        require_row(conn, TABLE, supplier_id, "supplier")
        row = soft_delete(conn, TABLE, supplier_id)
        qid = record_change(conn, TABLE, "delete", row)
    return write_response(request, {"id": supplier_id}, [qid])
