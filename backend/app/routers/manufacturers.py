from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..db import get_conn
from ..deps import record_change, write_response
from ..records import insert_row, list_rows, require_row, soft_delete, update_row
from ..validation import Name

router = APIRouter(prefix="/api/manufacturers", tags=["manufacturers"])

TABLE = "manufacturers"


class ManufacturerIn(BaseModel):
    name: Name
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ManufacturerUpdate(BaseModel):
    name: Optional[Name] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@router.get("")
def list_manufacturers(search: str = "", limit: int = 100):
    with get_conn() as conn:
        return {"success": True, "data": list_rows(conn, TABLE, ("name", "country"), search, limit)}


@router.get("/{manufacturer_id}")
def get_manufacturer(manufacturer_id: str):
    with get_conn() as conn:
        return {"success": True, "data": require_row(conn, TABLE, manufacturer_id, "manufacturer")}


@router.post("")
def create_manufacturer(data: ManufacturerIn, request: Request):
    with get_conn() as conn:
        row = insert_row(conn, TABLE, data.model_dump())
        qid = record_change(conn, TABLE, "create", row)
    return write_response(request, row, [qid], status_code=201)


@router.put("/{manufacturer_id}")
def update_manufacturer(manufacturer_id: str, data: ManufacturerUpdate, request: Request):
    with get_conn() as conn:
        require_row(conn, TABLE, manufacturer_id, "manufacturer")
        row = update_row(conn, TABLE, manufacturer_id, data.model_dump(exclude_none=True))
        qid = record_change(conn, TABLE, "update", row)
    return write_response(request, row, [qid])


@router.delete("/{manufacturer_id}")
def delete_manufacturer(manufacturer_id: str, request: Request):
    with get_conn() as conn:
        require_row(conn, TABLE, manufacturer_id, "manufacturer")
        row = soft_delete(conn, TABLE, manufacturer_id)
        qid = record_change(conn, TABLE, "delete", row)
    return write_response(request, {"id": manufacturer_id}, [qid])
