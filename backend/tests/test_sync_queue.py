import json

from backend.app import db
from backend.app import sync_queue


def _enqueue(n, table="customers", op="create"):
    ids = []
    with db.get_conn() as conn:
        for i in range(n):
            ids.append(sync_queue.enqueue(conn, table, op, {"id": f"row-{i}", "name": f"n{i}"}))
    return ids


def test_enqueue_and_claim_oldest_first(local_db):
    ids = _enqueue(3)
    with db.get_conn() as conn:
        claimed = sync_queue.claim_pending(conn, 2)
        c = sync_queue.counts(conn)
    assert [it["id"] for it in claimed] == ids[:2]
    assert claimed[0]["payload"] == {"id": "row-0", "name": "n0"}
    assert c == {"pending": 3, "synced": 0, "failed": 0, "total": 3}


def test_pending_among_ignores_resolved_rows(local_db):
    ids = _enqueue(2)
    with db.get_conn() as conn:
        sync_queue.mark_synced(conn, ids[0])
        assert sync_queue.pending_among(conn, ids) == [ids[1]]
        assert sync_queue.pending_among(conn, []) == []


def test_enqueue_rejects_unknown_operation(local_db):
    with db.get_conn() as conn:
        try:
            sync_queue.enqueue(conn, "customers", "upsert", {"id": "x"})
            assert False, "expected ValueError"
        except ValueError as ex:
            assert "upsert" in str(ex)


def test_attempt_ceiling_marks_failed_with_message(local_db):
    (item_id,) = _enqueue(1)
    with db.get_conn() as conn:
        assert sync_queue.mark_attempt_failed(conn, item_id, "boom", 3) == "pending"
        assert sync_queue.mark_attempt_failed(conn, item_id, "boom", 3) == "pending"
        assert sync_queue.mark_attempt_failed(conn, item_id, "boom", 3) == "failed"
        row = conn.execute("SELECT status, attempts, last_error FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
    assert row["status"] == "failed"
    assert row["attempts"] == 3
    assert row["last_error"] == "Failed after 3 attempts: boom"


def test_mark_synced_bumps_cumulative_total_once(local_db):
    (item_id,) = _enqueue(1)
    with db.get_conn() as conn:
        assert sync_queue.mark_synced(conn, item_id) is True
        assert sync_queue.mark_synced(conn, item_id) is False
        assert sync_queue.synced_total(conn) == 1


def test_clear_never_removes_pending(local_db):
    ids = _enqueue(3)
    with db.get_conn() as conn:
        sync_queue.mark_synced(conn, ids[0])
        sync_queue.mark_attempt_failed(conn, ids[1], "nope", 1)

        assert sync_queue.clear(conn) == 1
        assert sync_queue.counts(conn) == {"pending": 1, "synced": 0, "failed": 1, "total": 2}

        assert sync_queue.clear(conn, include_failed=True) == 1
        assert sync_queue.counts(conn)["pending"] == 1
        # Cleared synced rows still count as synced.
        assert sync_queue.synced_total(conn) == 1


def test_retry_failed_moves_back_to_pending(local_db):
    (item_id,) = _enqueue(1)
    with db.get_conn() as conn:
        sync_queue.mark_attempt_failed(conn, item_id, "nope", 1)
        assert sync_queue.retry_failed(conn) == 1
        row = conn.execute("SELECT status, attempts, last_error FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
    assert (row["status"], row["attempts"], row["last_error"]) == ("pending", 0, None)


def test_prune_only_touches_synced_rows(local_db):
    ids = _enqueue(5)
    with db.get_conn() as conn:
        sync_queue.mark_synced(conn, ids[0])
        sync_queue.mark_synced(conn, ids[1])
        # Below the cap: nothing happens.
        assert sync_queue.prune_synced(conn, 10) == 0
        assert sync_queue.prune_synced(conn, 5) == 2
        sync_queue.enqueue(conn, "customers", "create", {"id": "late"}, max_size=1)
        c = sync_queue.counts(conn)
    assert c["synced"] == 0
    assert c["pending"] == 4


def test_list_unresolved_decodes_payload(local_db):
    with db.get_conn() as conn:
        conn.execute(
            "INSERT INTO sync_queue (id, table_name, operation, payload, status, attempts, created_at) VALUES (?, ?, ?, ?, 'pending', 0, ?)",
            ("bad", "customers", "create", "{not json", db.now()),
        )
        sync_queue.enqueue(conn, "products", "update", {"id": "p1", "quantity": 2})
        items = sync_queue.list_unresolved(conn)
    assert items[0]["payload"] == {}
    assert items[1]["payload"] == json.loads('{"id": "p1", "quantity": 2}')


def test_sync_state_roundtrip(local_db):
    with db.get_conn() as conn:
        assert sync_queue.get_state(conn, "last_sync") is None
        sync_queue.set_state(conn, "last_sync", "2026-01-01T00:00:00+00:00")
        sync_queue.set_state(conn, "last_sync", "2026-01-02T00:00:00+00:00")
        assert sync_queue.get_state(conn, "last_sync") == "2026-01-02T00:00:00+00:00"
