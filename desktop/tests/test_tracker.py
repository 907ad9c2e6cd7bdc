import asyncio
import json
from urllib.error import URLError
from urllib.parse import parse_qsl, urlsplit

from desktop.tracker import ConnectionState, SyncStatus, SyncTracker


def _status_body(pending=0, synced=0, failed=0, connected=True):
    return {
        "success": True,
        "data": {
            "inProgress": False,
            "lastSync": "2026-01-01T10:00:00Z",
            "pendingItems": pending,
            "syncedItems": synced,
            "failedItems": failed,
            "queueItems": pending + failed,
            "currentOperation": None,
            "remote": {"configured": True, "connected": connected},
            "database": {"type": "sqlite", "path": "/data/pharmapos.db"},
        },
    }


class FakeServer:
    def __init__(self, body=None, up=True):
        self.body = body or _status_body()
        self.up = up
        self.calls = []

    def __call__(self, method, url, timeout, data):
        parts = urlsplit(url)
        path = parts.path
        self.calls.append((method, path, dict(parse_qsl(parts.query))))
        if not self.up:
            raise URLError("connection refused")
        if path == "/api/sync/status":
            return 200, json.dumps(self.body).encode()
        if path == "/api/sync/push":
            return 200, json.dumps({"success": True, "message": "Sync completed", "data": {"processed": 2}}).encode()
        if path == "/api/sync/queue" and method == "DELETE":
            return 200, json.dumps({"success": True, "data": {"removed": 3}}).encode()
        if path == "/api/sync/queue/retry":
            return 500, b"boom"
        return 200, json.dumps({"success": True, "data": {}}).encode()

    def status_calls(self):
        return [c for c in self.calls if c[1] == "/api/sync/status"]


def _tracker(server, **kwargs):
    return SyncTracker("http://127.0.0.1:5001", fetch=server, **kwargs)


def test_connection_state_flags_are_exclusive():
    state = ConnectionState(status="online", is_online=True, is_offline=True)
    assert state.is_online is True and state.is_offline is False
    dumped = SyncStatus().to_dict()
    assert dumped["connection"]["isOffline"] is True
    assert "pendingItems" in dumped["sync"]


def test_get_status_maps_server_counters():
    server = FakeServer(_status_body(pending=4, synced=10, failed=1))

    async def scenario():
        return await _tracker(server).get_status()

    status = asyncio.run(scenario())
    assert status.connection.status == "online"
    assert status.connection.is_online is True
    assert (status.sync.pending_items, status.sync.synced_items, status.sync.failed_items) == (4, 10, 1)
    assert status.sync.queue_items == 5
    assert status.sync.last_sync == "2026-01-01T10:00:00Z"
    assert status.databases.local.connected is True
    assert status.databases.local.path == "/data/pharmapos.db"
    assert status.databases.remote.configured is True


def test_unreachable_server_gives_default_then_cached_status():
    server = FakeServer(up=False)

    async def scenario():
        tracker = _tracker(server)
        first = await tracker.get_status()
        server.up = True
        server.body = _status_body(pending=2)
        second = await tracker.get_status()
        server.up = False
        third = await tracker.get_status()
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first.connection.status == "checking"
    assert first.sync.pending_items == 0
    assert second.sync.pending_items == 2
    # Last known counters survive; connection state says the server is gone.
    assert third.sync.pending_items == 2
    assert third.connection.status == "error"


def test_offline_notification_overrides_connection_but_keeps_counters():
    server = FakeServer(_status_body(pending=3))
    seen = []

    async def scenario():
        tracker = _tracker(server)
        tracker.subscribe(seen.append)
        await tracker.get_status()
        offline = tracker.set_network_state(False)
        online = tracker.set_network_state(True)
        return offline, online

    offline, online = asyncio.run(scenario())
    assert offline.connection.status == "offline"
    assert offline.connection.is_offline is True
    assert offline.sync.pending_items == 3
    assert online.connection.status == "online"
    assert [s.connection.status for s in seen] == ["online", "offline", "online"]


def test_network_back_online_refreshes_immediately_when_polling():
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server, interval=10)
        tracker.start_polling()
        await asyncio.sleep(0.05)
        tracker.set_network_state(False)
        before = len(server.status_calls())
        tracker.set_network_state(True)
        await asyncio.sleep(0.05)
        after = len(server.status_calls())
        tracker.close()
        return before, after

    before, after = asyncio.run(scenario())
    assert before == 1
    assert after == 2


def test_listeners_only_hear_changes():
    server = FakeServer(_status_body(pending=1))
    seen = []

    async def scenario():
        tracker = _tracker(server)
        tracker.subscribe(seen.append)
        await tracker.get_status()
        await tracker.get_status()
        server.body = _status_body(pending=0, synced=1)
        await tracker.get_status()

    asyncio.run(scenario())
    assert [s.sync.pending_items for s in seen] == [1, 0]
    assert seen[-1].sync.synced_items == 1


def test_subscribe_gets_current_status_and_unsubscribe_is_safe():
    server = FakeServer()
    early, late = [], []

    async def scenario():
        tracker = _tracker(server)
        tracker.subscribe(early.append)
        await tracker.get_status()
        unsubscribe = tracker.subscribe(late.append)
        unsubscribe()
        unsubscribe()
        server.body = _status_body(pending=9)
        await tracker.get_status()

    asyncio.run(scenario())
    assert len(early) == 2
    assert len(late) == 1


def test_failing_listener_does_not_block_others():
    server = FakeServer()
    seen = []

    def broken(status):
        raise RuntimeError("ui gone")

    async def scenario():
        tracker = _tracker(server)
        tracker.subscribe(broken)
        tracker.subscribe(seen.append)
        await tracker.get_status()

    asyncio.run(scenario())
    assert len(seen) == 1


def test_start_polling_twice_keeps_one_timer():
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server)
        tracker.start_polling(0.05)
        tracker.start_polling(0.05)
        assert tracker.polling is True
        await asyncio.sleep(0.22)
        tracker.stop_polling()
        tracker.stop_polling()
        assert tracker.polling is False
        await asyncio.sleep(0.02)
        count = len(server.status_calls())
        await asyncio.sleep(0.1)
        return count, len(server.status_calls())

    count, later = asyncio.run(scenario())
    # One timer at 50ms over ~220ms: 5 fetches at most; two timers would double that.
    assert 3 <= count <= 6
    assert later == count


def test_close_stops_polling_and_drops_listeners():
    server = FakeServer()
    seen = []

    async def scenario():
        tracker = _tracker(server)
        tracker.subscribe(seen.append)
        tracker.start_polling(0.01)
        await asyncio.sleep(0.03)
        tracker.close()
        await asyncio.sleep(0.02)
        heard = len(seen)
        calls = len(server.status_calls())
        server.body = _status_body(pending=7)
        await asyncio.sleep(0.05)
        tracker.start_polling(0.01)
        assert tracker.polling is False
        assert tracker.subscribe(seen.append)() is None
        return heard, calls

    heard, calls = asyncio.run(scenario())
    assert heard == 1
    assert len(seen) == heard
    assert len(server.status_calls()) == calls


def test_actions_forward_to_sync_endpoints():
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server)
        pushed = await tracker.trigger_sync()
        cleared = await tracker.clear_queue(include_failed=True)
        kept = await tracker.clear_queue()
        retried = await tracker.retry_failed()
        queue = await tracker.get_queue()
        conn = await tracker.check_connectivity()
        return pushed, cleared, kept, retried, queue, conn

    pushed, cleared, kept, retried, queue, conn = asyncio.run(scenario())
    assert pushed["success"] is True
    assert cleared["data"] == {"removed": 3}
    assert kept["success"] is True
    assert retried["success"] is False
    assert queue["success"] is True and conn["success"] is True

    paths = [(m, p, q) for m, p, q in server.calls]
    assert ("POST", "/api/sync/push", {}) in paths
    # A push refreshes the counters.
    assert paths[1] == ("GET", "/api/sync/status", {})
    assert ("DELETE", "/api/sync/queue", {"include_failed": "true"}) in paths
    assert ("DELETE", "/api/sync/queue", {}) in paths
    assert ("POST", "/api/sync/queue/retry", {}) in paths
    assert ("GET", "/api/sync/check-connectivity", {}) in paths


def test_actions_report_failure_when_server_is_down():
    server = FakeServer(up=False)

    async def scenario():
        return await _tracker(server).trigger_sync()

    out = asyncio.run(scenario())
    assert out["success"] is False
    assert "connection refused" in out["message"]
