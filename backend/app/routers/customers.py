from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..db import get_conn
from ..deps import record_change, write_response
from ..records import insert_row, list_rows, require_row, soft_delete, update_row
from ..validation import Name

router = APIRouter(prefix="/api/customers", tags=["customers"])

TABLE = "customers"


class CustomerIn(BaseModel):
    name: Name
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    loyalty_points: float = 0


class CustomerUpdate(BaseModel):
    name: Optional[Name] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    loyalty_points: Optional[float] = None


@router.get("")
def list_customers(search: str = "", limit: int = 100):
    with get_conn() as conn:
        return {"success": True, "data": list_rows(conn, TABLE, ("name", "email", "phone"), search, limit)}


@router.get("/{customer_id}")
def get_customer(customer_id: str):
    with get_conn() as conn:
        return {"success": True, "data": require_row(conn, TABLE, customer_id, "customer")}


@router.post("")
def create_customer(data: CustomerIn, request: Request):
    with get_conn() as conn:
        row = insert_row(conn, TABLE, data.model_dump())
        qid = record_change(conn, TABLE, "create", row)
    return write_response(request, row, [qid], status_code=201)


@router.put("/{customer_id}")
def update_customer(customer_id: str, data: CustomerUpdate, request: Request):
    payload = data.model_dump(exclude_none=True)
    with get_conn() as conn:
        require_row(conn, TABLE, customer_id, "customer")
        row = update_row(conn, TABLE, customer_id, payload)
        qid = record_change(conn, TABLE, "update", row)
    return write_response(request, row, [qid])


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, request: Request):
    with get_conn() as conn:
        require_row(conn, TABLE, customer_id, "customer")
        row = soft_delete(conn, TABLE, customer_id)
        qid = record_change(conn, TABLE, "delete", row)
    return write_response(request, {"id": customer_id}, [qid])
