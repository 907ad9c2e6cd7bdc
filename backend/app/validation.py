from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


PurchaseStatus = Annotated[Literal["draft", "ordered", "received", "canceled"], BeforeValidator(_to_lower_str)]
SyncOperation = Annotated[Literal["create", "update", "delete"], BeforeValidator(_to_lower_str)]

# Names are required on every business entity; blank after trimming is a client error.
Name = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=200)]

# SKUs end up in barcodes and labels, keep them to a safe character set.
Sku = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9._/-]*$"),
]
