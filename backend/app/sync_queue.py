"""
Local outbox of writes waiting to reach the remote store-of-record.

Rows move pending -> synced, or pending -> failed once the attempt ceiling is
reached. Nothing here deletes a pending row; failed rows only go away through an
explicit clear.
"""

import json
from typing import Optional

from .db import new_id, now

OPERATIONS = {"create", "update", "delete"}
PRUNE_BATCH = 100


def enqueue(conn, table_name: str, operation: str, payload: dict, *, max_size: Optional[int] = None) -> str:
    if operation not in OPERATIONS:
        raise ValueError(f"unknown sync operation: {operation}")
    if max_size:
        prune_synced(conn, max_size)
    item_id = new_id()
    conn.execute(
        """
        INSERT INTO sync_queue (id, table_name, operation, payload, status, attempts, created_at)
        VALUES (?, ?, ?, ?, 'pending', 0, ?)
        """,
        (item_id, table_name, operation, json.dumps(payload, default=str), now()),
    )
    return item_id


def prune_synced(conn, max_size: int) -> int:
    total = conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]
    if total < max_size:
        return 0
    cur = conn.execute(
        """
        DELETE FROM sync_queue
        WHERE id IN (
          SELECT id FROM sync_queue
          WHERE status = 'synced'
          ORDER BY created_at ASC, rowid ASC
          LIMIT ?
        )
        """,
        (PRUNE_BATCH,),
    )
    return cur.rowcount


def counts(conn) -> dict:
    out = {"pending": 0, "synced": 0, "failed": 0}
    for row in conn.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"):
        out[row["status"]] = int(row["n"])
    out["total"] = out["pending"] + out["synced"] + out["failed"]
    return out


def _decode(row) -> dict:
    item = dict(row)
    try:
        item["payload"] = json.loads(item.get("payload") or "{}")
    except ValueError:
        item["payload"] = {}
    return item


def list_unresolved(conn, limit: int = 50) -> list:
    rows = conn.execute(
        """
        SELECT id, table_name, operation, payload, status, attempts, last_error, created_at
        FROM sync_queue
        WHERE status IN ('pending', 'failed')
        ORDER BY created_at ASC, rowid ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [_decode(r) for r in rows]


def claim_pending(conn, limit: int) -> list:
    rows = conn.execute(
        """
        SELECT id, table_name, operation, payload, attempts
        FROM sync_queue
        WHERE status = 'pending'
        ORDER BY created_at ASC, rowid ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [_decode(r) for r in rows]


def pending_among(conn, ids: list) -> list:
    if not ids:
        return []
    marks = ",".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT id FROM sync_queue WHERE status = 'pending' AND id IN ({marks})",
        list(ids),
    ).fetchall()
    return [r["id"] for r in rows]


def mark_synced(conn, item_id: str) -> bool:
    cur = conn.execute(
        """
        UPDATE sync_queue
        SET status = 'synced', synced_at = ?, last_error = NULL
        WHERE id = ? AND status = 'pending'
        """,
        (now(), item_id),
    )
    if cur.rowcount:
        bump_synced_total(conn, cur.rowcount)
    return bool(cur.rowcount)


def mark_attempt_failed(conn, item_id: str, error: str, max_attempts: int) -> str:
    row = conn.execute("SELECT attempts FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
    if not row:
        return "missing"
    attempts = int(row["attempts"] or 0) + 1
    if attempts >= max_attempts:
        conn.execute(
            "UPDATE sync_queue SET status = 'failed', attempts = ?, last_error = ? WHERE id = ?",
            (attempts, f"Failed after {attempts} attempts: {error}"[:1000], item_id),
        )
        return "failed"
    conn.execute(
        "UPDATE sync_queue SET attempts = ?, last_error = ? WHERE id = ?",
        (attempts, str(error)[:1000], item_id),
    )
    return "pending"


def retry_failed(conn) -> int:
    cur = conn.execute(
        "UPDATE sync_queue SET status = 'pending', attempts = 0, last_error = NULL WHERE status = 'failed'"
    )
    return cur.rowcount


def clear(conn, include_failed: bool = False) -> int:
    statuses = ("synced", "failed") if include_failed else ("synced",)
    marks = ",".join("?" for _ in statuses)
    cur = conn.execute(f"DELETE FROM sync_queue WHERE status IN ({marks})", statuses)
    return cur.rowcount


def get_state(conn, key: str, default=None):
    row = conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def set_state(conn, key: str, value) -> None:
    conn.execute(
        """
        INSERT INTO sync_state (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, None if value is None else str(value)),
    )


def synced_total(conn) -> int:
    try:
        return int(get_state(conn, "synced_total", 0) or 0)
    except ValueError:
        return 0


def bump_synced_total(conn, n: int = 1) -> int:
    total = synced_total(conn) + int(n)
    set_state(conn, "synced_total", total)
    return total
