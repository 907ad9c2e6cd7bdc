"""
Client for the remote store-of-record (PostgreSQL).

The local SQLite store is always the durable record. This module only knows how
to replay queued rows into the remote tables: upsert by `id` for create/update,
soft delete (or delete when the table has no `is_active`) for delete.
"""

from contextlib import contextmanager
from typing import Dict, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .config import settings


class RemoteTableMissing(Exception):
    pass


# Errors that mean "the remote is not reachable right now" rather than "this row is bad".
CONNECTIVITY_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, TimeoutError, OSError)


class RemoteStore:
    def __init__(self, dsn: Optional[str] = None, connect_timeout: Optional[int] = None):
        self.dsn = (settings.remote_db_url if dsn is None else dsn) or ""
        self.connect_timeout = connect_timeout or settings.remote_connect_timeout
        self._columns: Dict[str, Dict[str, str]] = {}

    @property
    def configured(self) -> bool:
        return bool(self.dsn)

    @contextmanager
    def connect(self):
        if not self.configured:
            raise psycopg.OperationalError("remote database not configured")
        with psycopg.connect(self.dsn, row_factory=dict_row, connect_timeout=self.connect_timeout) as conn:
            yield conn

    def ping(self) -> bool:
        if not self.configured:
            return False
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1 AS ok")
                    cur.fetchone()
            return True
        except CONNECTIVITY_ERRORS:
            return False

    def columns(self, conn, table_name: str) -> Dict[str, str]:
        cached = self._columns.get(table_name)
        if cached is not None:
            return cached
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_schema = current_schema() AND table_name = %s
                """,
                (table_name,),
            )
            cols = {r["column_name"]: r["data_type"] for r in cur.fetchall()}
        if not cols:
            raise RemoteTableMissing(f"remote table does not exist: {table_name}")
        self._columns[table_name] = cols
        return cols

    def apply(self, conn, table_name: str, operation: str, payload: dict) -> None:
        cols = self.columns(conn, table_name)
        row_id = payload.get("id")
        if not row_id:
            raise ValueError("sync payload has no id")

        if operation == "delete":
            if "is_active" in cols:
                query = sql.SQL("UPDATE {} SET is_active = false WHERE id = %s").format(sql.Identifier(table_name))
            else:
                query = sql.SQL("DELETE FROM {} WHERE id = %s").format(sql.Identifier(table_name))
            with conn.cursor() as cur:
                cur.execute(query, (row_id,))
            return

        values = {}
        for key, value in payload.items():
            dtype = cols.get(key)
            if dtype is None:
                continue
            # SQLite keeps booleans as 0/1.
            if dtype == "boolean" and value is not None:
                value = bool(value)
            values[key] = value

        names = list(values.keys())
        updates = [n for n in names if n != "id"]
        conflict = (
            sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(n), sql.Identifier(n)) for n in updates
                )
            )
            if updates
            else sql.SQL("DO NOTHING")
        )
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT (id) {}").format(
            sql.Identifier(table_name),
            sql.SQL(", ").join(sql.Identifier(n) for n in names),
            sql.SQL(", ").join(sql.Placeholder() for _ in names),
            conflict,
        )
        with conn.cursor() as cur:
            cur.execute(query, [values[n] for n in names])
