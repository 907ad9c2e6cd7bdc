import json

from backend.app import deps, logs, main
from backend.workers import sync_worker


def test_json_log_writes_one_object_per_line(capsys):
    logs.json_log("warning", "sync.propagate.error", item_ids=["q1"], error=ValueError("boom"))
    lines = capsys.readouterr().err.splitlines()
    assert len(lines) == 1
    rec = json.loads(lines[0])
    assert rec["level"] == "warning"
    assert rec["event"] == "sync.propagate.error"
    assert rec["item_ids"] == ["q1"]
    assert rec["error"] == "boom"
    assert rec["ts"]


def test_api_and_worker_share_one_logger():
    assert deps.json_log is logs.json_log
    assert main.json_log is logs.json_log
    assert sync_worker.json_log is logs.json_log
