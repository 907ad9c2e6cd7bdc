"""Shared SQL for the simple master-data tables (customers, suppliers, manufacturers, products)."""

from fastapi import HTTPException

from .db import new_id, now, row_to_dict


def list_rows(conn, table: str, search_cols, search: str = "", limit: int = 100, order_by: str = "name"):
    where = ["is_active = 1"]
    params = []
    term = (search or "").strip()
    if term:
        where.append("(" + " OR ".join(f"{c} LIKE ?" for c in search_cols) + ")")
        params.extend([f"%{term}%"] * len(search_cols))
    params.append(max(1, min(int(limit or 100), 1000)))
    rows = conn.execute(
        f"SELECT * FROM {table} WHERE {' AND '.join(where)} ORDER BY {order_by} LIMIT ?",
        params,
    ).fetchall()
    return [dict(r) for r in rows]


def get_row(conn, table: str, row_id: str, *, include_inactive: bool = False):
    sql = f"SELECT * FROM {table} WHERE id = ?"
    if not include_inactive:
        sql += " AND is_active = 1"
    return row_to_dict(conn.execute(sql, (row_id,)).fetchone())


def require_row(conn, table: str, row_id: str, label: str):
    row = get_row(conn, table, row_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def insert_row(conn, table: str, values: dict) -> dict:
    ts = now()
    data = {"id": new_id(), **values, "created_at": ts, "updated_at": ts}
    cols = list(data.keys())
    conn.execute(
        f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
        [data[c] for c in cols],
    )
    return get_row(conn, table, data["id"], include_inactive=True)


def update_row(conn, table: str, row_id: str, values: dict) -> dict:
    fields = []
    params = []
    for k, v in values.items():
        fields.append(f"{k} = ?")
        params.append(v)
    fields.append("updated_at = ?")
    params.append(now())
    params.append(row_id)
    conn.execute(f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?", params)
    return get_row(conn, table, row_id, include_inactive=True)


def soft_delete(conn, table: str, row_id: str) -> dict:
    return update_row(conn, table, row_id, {"is_active": 0})
