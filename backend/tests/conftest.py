import os
import sys
from contextlib import contextmanager


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import psycopg
import pytest

from backend.app import db
from backend.app.remote import RemoteTableMissing


@pytest.fixture
def local_db(monkeypatch, tmp_path):
    path = str(tmp_path / "data" / "pharmapos.db")
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


class _Tx:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _RemoteConn:
    def transaction(self):
        return _Tx()


class FakeRemote:
    """Stands in for RemoteStore: records applied rows, can go offline or miss tables."""

    def __init__(self, online=True, configured=True, missing_tables=(), fail_after=None):
        self.online = online
        self.configured = configured
        self.missing_tables = set(missing_tables)
        self.applied = []
        # Last payload per (table, id), upsert-style.
        self.rows = {}
        # Drop the connection after this many successful applies.
        self.fail_after = fail_after

    def ping(self):
        return self.configured and self.online

    @contextmanager
    def connect(self):
        if not self.configured or not self.online:
            raise psycopg.OperationalError("connection refused")
        yield _RemoteConn()

    def apply(self, conn, table_name, operation, payload):
        if self.fail_after is not None and len(self.applied) >= self.fail_after:
            self.online = False
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        if table_name in self.missing_tables:
            raise RemoteTableMissing(f"remote table does not exist: {table_name}")
        self.applied.append((table_name, operation, payload.get("id")))
        if operation != "delete":
            self.rows[(table_name, payload.get("id"))] = dict(payload)


@pytest.fixture
def make_remote():
    return FakeRemote
