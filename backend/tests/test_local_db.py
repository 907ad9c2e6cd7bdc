import json
import os
import sqlite3

from backend.app import db
from backend.app import sync_queue


def test_init_db_is_idempotent(local_db):
    assert db.init_db() == 0
    with db.get_conn() as conn:
        names = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert set(db.BUSINESS_TABLES) <= names
    assert {"sync_queue", "sync_state"} <= names


def test_init_db_adds_columns_missing_from_older_stores(monkeypatch, tmp_path):
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE products (id TEXT PRIMARY KEY, name TEXT NOT NULL, sku TEXT, price REAL, quantity REAL,"
        " is_active INTEGER DEFAULT 1, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
    )
    conn.commit()
    conn.close()

    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()

    with db.get_conn() as conn:
        cols = {r[1] for r in conn.execute("PRAGMA table_info(products)")}
    assert {"barcode", "unit", "requires_prescription"} <= cols


def test_get_conn_rolls_back_on_error(local_db):
    try:
        with db.get_conn() as conn:
            sync_queue.enqueue(conn, "customers", "create", {"id": "c1"})
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    with db.get_conn() as conn:
        assert sync_queue.counts(conn)["total"] == 0


def test_legacy_queue_file_is_imported_once(local_db):
    legacy = db.legacy_queue_path()
    with open(legacy, "w", encoding="utf-8") as f:
        json.dump(
            [
                {"id": "q1", "tableName": "customers", "operation": "create", "data": {"id": "c1"}, "synced": False},
                {"id": "q2", "tableName": "customers", "operation": "update", "data": {"id": "c1"}, "synced": True},
                {"id": "q3", "operation": "create"},
                {"id": "q4", "tableName": "products", "operation": "delete", "data": {"id": "p1"}, "retries": 2},
            ],
            f,
        )

    assert db.init_db() == 2
    assert not os.path.exists(legacy)
    assert os.path.exists(legacy + ".backup")
    assert db.init_db() == 0

    with db.get_conn() as conn:
        items = sync_queue.list_unresolved(conn)
    assert sorted((it["id"], it["attempts"]) for it in items) == [("q1", 0), ("q4", 2)]


def test_corrupt_legacy_queue_is_set_aside(local_db, capsys):
    legacy = db.legacy_queue_path()
    with open(legacy, "w", encoding="utf-8") as f:
        f.write('[{"id": "q1", "tableName": ')

    assert db.init_db() == 0
    assert not os.path.exists(legacy)
    assert os.path.exists(legacy + ".corrupt")
    events = [json.loads(line)["event"] for line in capsys.readouterr().err.splitlines() if line.strip()]
    assert "legacy_queue.corrupt" in events
    # Startup goes on and the store is usable.
    with db.get_conn() as conn:
        assert sync_queue.counts(conn)["total"] == 0


def test_legacy_queue_that_is_not_a_list_is_set_aside(local_db):
    legacy = db.legacy_queue_path()
    with open(legacy, "w", encoding="utf-8") as f:
        json.dump({"queue": []}, f)

    assert db.init_db() == 0
    assert os.path.exists(legacy + ".corrupt")


def test_malformed_legacy_entries_are_skipped_individually(local_db):
    legacy = db.legacy_queue_path()
    with open(legacy, "w", encoding="utf-8") as f:
        json.dump(
            [
                {"id": "q1", "tableName": "customers", "operation": "create", "data": {"id": "c1"}, "retries": "lots"},
                {"id": "q2", "tableName": ["customers"], "operation": "create"},
                {"id": "q3", "tableName": "customers", "operation": "create", "data": {"id": "c3"}, "retries": "1"},
            ],
            f,
        )

    assert db.init_db() == 1
    assert os.path.exists(legacy + ".backup")
    with db.get_conn() as conn:
        items = sync_queue.list_unresolved(conn)
    assert [(it["id"], it["attempts"]) for it in items] == [("q3", 1)]
