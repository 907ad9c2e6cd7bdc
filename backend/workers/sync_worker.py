#!/usr/bin/env python3
"""
Local -> remote sync worker.

Every write served by the local API lands in SQLite first and is recorded in the
`sync_queue` outbox in the same transaction. This worker replays that outbox into
the remote store-of-record (PostgreSQL) whenever it is reachable.

It runs in two shapes:
- inside the API process, as a background thread started on app startup
- from the command line: `python -m backend.workers.sync_worker --once`
"""

import argparse
import json
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from ..app import db
from ..app import sync_queue
from ..app.config import settings
from ..app.logs import json_log
from ..app.remote import CONNECTIVITY_ERRORS, RemoteStore

# Backlog passes a single write may drive before leaving the rest to the background loop.
PROPAGATE_MAX_PASSES = 10


def _pending_count() -> int:
    with db.get_conn() as conn:
        return sync_queue.counts(conn)["pending"]


def run_sync_pass(remote: RemoteStore, batch_size: int = 100, max_attempts: int = 3) -> dict:
    """
    Push up to `batch_size` pending rows (oldest first) to the remote store.

    Connectivity errors abort the pass and propagate: the rows stay pending and no
    attempt is charged. Any other error is charged to the row that caused it, and
    later rows for the same record wait for the next pass so they never overtake it.
    """
    with db.get_conn() as conn:
        items = sync_queue.claim_pending(conn, max(1, int(batch_size or 100)))

    processed = 0
    failed = 0
    blocked = set()
    if items:
        with remote.connect() as rconn:
            for item in items:
                record = (item["table_name"], item["payload"].get("id"))
                if record in blocked:
                    continue
                try:
                    with rconn.transaction():
                        remote.apply(rconn, item["table_name"], item["operation"], item["payload"])
                except CONNECTIVITY_ERRORS:
                    raise
                except Exception as ex:
                    if record[1] is not None:
                        blocked.add(record)
                    with db.get_conn() as conn:
                        status = sync_queue.mark_attempt_failed(conn, item["id"], str(ex), max_attempts)
                    if status == "failed":
                        failed += 1
                    json_log(
                        "warning",
                        "sync.item.error",
                        item_id=item["id"],
                        table=item["table_name"],
                        operation=item["operation"],
                        status=status,
                        error=str(ex),
                    )
                    continue
                with db.get_conn() as conn:
                    if sync_queue.mark_synced(conn, item["id"]):
                        processed += 1

    with db.get_conn() as conn:
        if processed:
            sync_queue.set_state(conn, "last_sync", datetime.now(timezone.utc).isoformat())
        remaining = sync_queue.counts(conn)["pending"]
    return {"processed": processed, "failed": failed, "remaining": remaining}


class SyncEngine:
    """Connectivity state, non-overlapping passes and the background loop."""

    def __init__(
        self,
        remote: Optional[RemoteStore] = None,
        *,
        poll_seconds: Optional[float] = None,
        push_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_queue_size: Optional[int] = None,
        clock=time.monotonic,
    ):
        self.remote = remote if remote is not None else RemoteStore()
        self.poll_seconds = poll_seconds or settings.sync_poll_seconds
        self.push_seconds = push_seconds or settings.sync_push_seconds
        self.batch_size = batch_size or settings.sync_batch_size
        self.max_attempts = max_attempts or settings.sync_max_attempts
        self.max_queue_size = max_queue_size or settings.sync_max_queue_size
        self.clock = clock

        self.is_online = False
        self.last_check: Optional[str] = None
        self.last_error: Optional[str] = None
        self.current_operation: Optional[str] = None

        self._pass_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_push = 0.0

    @property
    def in_progress(self) -> bool:
        return self._pass_lock.locked()

    def check_connectivity(self) -> bool:
        was_online = self.is_online
        self.is_online = self.remote.ping()
        self.last_check = datetime.now(timezone.utc).isoformat()
        if was_online != self.is_online:
            json_log("info", "sync.connectivity", online=self.is_online, configured=self.remote.configured)
        return self.is_online

    def run_pass(self) -> dict:
        if not self._pass_lock.acquire(blocking=False):
            return {"processed": 0, "failed": 0, "remaining": _pending_count(), "skipped": True}
        try:
            self.current_operation = "push"
            if not self.remote.configured:
                return {"processed": 0, "failed": 0, "remaining": _pending_count(), "offline": True}
            try:
                result = run_sync_pass(self.remote, self.batch_size, self.max_attempts)
            except CONNECTIVITY_ERRORS as ex:
                self.is_online = False
                self.last_error = str(ex)
                json_log("warning", "sync.pass.offline", error=str(ex))
                return {"processed": 0, "failed": 0, "remaining": _pending_count(), "offline": True}
            self.is_online = True
            self.last_error = None
            if result["processed"] or result["failed"]:
                json_log("info", "sync.pass", **result)
            return result
        finally:
            self.current_operation = None
            self._pass_lock.release()

    def propagate(self, item_ids: list) -> bool:
        """
        Push freshly queued rows right away, behind everything queued before them.
        Returns True when at least one of them is still deferred.
        """
        if not item_ids:
            return False
        if not self.remote.configured or not self.is_online:
            return True
        for _ in range(PROPAGATE_MAX_PASSES):
            result = self.run_pass()
            if result.get("skipped") or result.get("offline"):
                return True
            with db.get_conn() as conn:
                if not sync_queue.pending_among(conn, list(item_ids)):
                    return False
            # A short batch already saw every pending row; another pass would only retry errors.
            if result["processed"] < self.batch_size:
                return True
        return True

    def tick(self, now_ts: Optional[float] = None) -> Optional[dict]:
        now_ts = self.clock() if now_ts is None else now_ts
        was_online = self.is_online
        if not self.check_connectivity():
            return None
        # Coming back online flushes the queue immediately.
        if not was_online or (now_ts - self._last_push) >= self.push_seconds:
            self._last_push = now_ts
            return self.run_pass()
        return None

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as ex:
                json_log("error", "sync.loop.error", error=str(ex))
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="sync-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def status(self) -> dict:
        with db.get_conn() as conn:
            c = sync_queue.counts(conn)
            synced_total = sync_queue.synced_total(conn)
            last_sync = sync_queue.get_state(conn, "last_sync")
        return {
            "inProgress": self.in_progress,
            "lastSync": last_sync,
            "pendingItems": c["pending"],
            "syncedItems": synced_total,
            "failedItems": c["failed"],
            "queueItems": c["pending"] + c["failed"],
            "currentOperation": self.current_operation,
            "remote": {"configured": self.remote.configured, "connected": self.is_online},
            "database": {"type": "sqlite", "path": db.DB_PATH},
        }


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=None, help="Local SQLite path (defaults to LOCAL_DB_PATH)")
    parser.add_argument("--remote", default=None, help="Remote PostgreSQL URL (defaults to REMOTE_DATABASE_URL)")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    if args.db:
        db.DB_PATH = args.db
    db.init_db()

    engine = SyncEngine(RemoteStore(args.remote))
    if args.once:
        engine.check_connectivity()
        result = engine.run_pass()
        print(json.dumps(result))
        return 0 if not result.get("offline") else 1

    json_log("info", "sync.worker.start", db=db.DB_PATH, configured=engine.remote.configured)
    try:
        engine.run_forever()
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
