from typing import Optional

from pydantic import BaseModel

from backend.app.validation import Name, PurchaseStatus, Sku, SyncOperation


class _M(BaseModel):
    name: Name
    status: PurchaseStatus
    operation: SyncOperation
    sku: Optional[Sku] = None


def test_validation_types_normalize_case_and_whitespace():
    m = _M(name="  Amoxicillin 500mg ", status="RECEIVED", operation=" Update ", sku=" AMX-500 ")
    assert m.name == "Amoxicillin 500mg"
    assert m.status == "received"
    assert m.operation == "update"
    assert m.sku == "AMX-500"


def test_blank_name_and_weird_sku_are_rejected():
    for kwargs in ({"name": "   "}, {"name": "ok", "sku": "has space"}, {"name": "ok", "status": "lost"}):
        data = {"name": "x", "status": "draft", "operation": "create", **kwargs}
        try:
            _M(**data)
            assert False, "expected validation error"
        except Exception:
            pass
