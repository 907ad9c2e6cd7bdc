import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from .config import settings
from .logs import json_log

# Can be overridden via CLI (see serve.main()) or by tests.
DB_PATH = settings.local_db_path

BUSINESS_TABLES = ("customers", "suppliers", "manufacturers", "products", "purchases", "purchase_items")

SCHEMA = """
CREATE TABLE IF NOT EXISTS customers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  email TEXT,
  phone TEXT,
  address TEXT,
  loyalty_points REAL DEFAULT 0,
  is_active INTEGER DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS suppliers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  contact_person TEXT,
  email TEXT,
  phone TEXT,
  address TEXT,
  is_active INTEGER DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS manufacturers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  country TEXT,
  email TEXT,
  phone TEXT,
  is_active INTEGER DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  sku TEXT UNIQUE,
  barcode TEXT,
  category TEXT,
  manufacturer_id TEXT,
  unit TEXT DEFAULT 'unit',
  price REAL DEFAULT 0,
  cost REAL DEFAULT 0,
  quantity REAL DEFAULT 0,
  requires_prescription INTEGER DEFAULT 0,
  is_active INTEGER DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS purchases (
  id TEXT PRIMARY KEY,
  supplier_id TEXT NOT NULL,
  invoice_no TEXT,
  status TEXT DEFAULT 'draft',
  total REAL DEFAULT 0,
  notes TEXT,
  is_active INTEGER DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS purchase_items (
  id TEXT PRIMARY KEY,
  purchase_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  quantity REAL NOT NULL,
  unit_cost REAL NOT NULL,
  line_total REAL NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_queue (
  id TEXT PRIMARY KEY,
  table_name TEXT NOT NULL,
  operation TEXT NOT NULL,
  payload TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  created_at TEXT NOT NULL,
  synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue (status, created_at);

CREATE TABLE IF NOT EXISTS sync_state (
  key TEXT PRIMARY KEY,
  value TEXT
);
"""


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def db_connect():
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_conn():
    # Commit on success, rollback on exception, always close.
    conn = db_connect()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def row_to_dict(row):
    return dict(row) if row is not None else None


def init_db():
    parent = os.path.dirname(os.path.abspath(DB_PATH))
    os.makedirs(parent, exist_ok=True)
    with get_conn() as conn:
        conn.executescript(SCHEMA)
        # CREATE TABLE IF NOT EXISTS does not add new columns. Keep a tiny
        # runtime migration layer for stores created by older builds.
        cur = conn.cursor()
        cur.execute("PRAGMA table_info(products)")
        cols = {r[1] for r in cur.fetchall()}
        wanted = {
            "barcode": "TEXT",
            "unit": "TEXT DEFAULT 'unit'",
            "requires_prescription": "INTEGER DEFAULT 0",
        }
        for col, ddl in wanted.items():
            if col not in cols:
                cur.execute(f"ALTER TABLE products ADD COLUMN {col} {ddl}")

        cur.execute("PRAGMA table_info(sync_queue)")
        queue_cols = {r[1] for r in cur.fetchall()}
        if "last_error" not in queue_cols:
            cur.execute("ALTER TABLE sync_queue ADD COLUMN last_error TEXT")
    return import_legacy_queue()


def legacy_queue_path() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(DB_PATH)), "sync-queue.json")


def import_legacy_queue() -> int:
    """
    Older builds kept the offline queue in a JSON file beside the database.
    Import its unsynced entries once, then move the file out of the way.

    An unreadable file is set aside as `.corrupt` and startup goes on; malformed
    entries are skipped one by one.
    """
    path = legacy_queue_path()
    if not os.path.exists(path):
        return 0
    try:
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f)
        if entries is not None and not isinstance(entries, list):
            raise ValueError(f"expected a list of entries, got {type(entries).__name__}")
    except (OSError, ValueError) as ex:
        json_log("warning", "legacy_queue.corrupt", path=path, error=str(ex))
        os.replace(path, path + ".corrupt")
        return 0
    imported = 0
    skipped = 0
    with get_conn() as conn:
        cur = conn.cursor()
        for item in entries or []:
            if not isinstance(item, dict) or item.get("synced"):
                continue
            try:
                table_name = (item.get("tableName") or item.get("table_name") or "").strip()
                operation = (item.get("operation") or "").strip()
                if not table_name or not operation:
                    continue
                values = (
                    str(item.get("id") or new_id()),
                    table_name,
                    operation,
                    json.dumps(item.get("data") or {}),
                    int(item.get("retries") or 0),
                    str(item.get("timestamp") or now()),
                )
            except (AttributeError, TypeError, ValueError) as ex:
                skipped += 1
                json_log("warning", "legacy_queue.entry_skipped", entry_id=item.get("id"), error=str(ex))
                continue
            cur.execute(
                """
                INSERT OR IGNORE INTO sync_queue (id, table_name, operation, payload, status, attempts, created_at)
                VALUES (?, ?, ?, ?, 'pending', ?, ?)
                """,
                values,
            )
            imported += cur.rowcount
    os.replace(path, path + ".backup")
    json_log("info", "legacy_queue.imported", imported=imported, skipped=skipped)
    return imported
