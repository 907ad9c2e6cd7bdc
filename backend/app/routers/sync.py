from fastapi import APIRouter, Depends

from .. import sync_queue
from ..db import get_conn
from ..deps import get_sync_engine

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/status")
def sync_status(engine=Depends(get_sync_engine)):
    return {"success": True, "data": engine.status()}


@router.get("/check-connectivity")
def check_connectivity(engine=Depends(get_sync_engine)):
    online = engine.check_connectivity()
    with get_conn() as conn:
        c = sync_queue.counts(conn)
    return {
        "success": True,
        "data": {
            "isOnline": online,
            "configured": engine.remote.configured,
            "lastCheck": engine.last_check,
            "queueSize": c["pending"] + c["failed"],
        },
    }


@router.post("/push")
def push(engine=Depends(get_sync_engine)):
    result = engine.run_pass()
    body = {"success": True, "data": result}
    if result.get("offline"):
        body["code"] = "OFFLINE_MODE"
        body["message"] = "Remote database is not reachable; pending items stay queued."
    elif result.get("skipped"):
        body["message"] = "A sync pass is already running."
    return body


@router.get("/queue")
def get_queue(limit: int = 50):
    with get_conn() as conn:
        c = sync_queue.counts(conn)
        items = sync_queue.list_unresolved(conn, max(1, min(int(limit or 50), 500)))
    return {
        "success": True,
        "data": {"total": c["pending"] + c["failed"], "pending": c["pending"], "failed": c["failed"], "items": items},
    }


@router.post("/queue/retry")
def retry_failed():
    with get_conn() as conn:
        n = sync_queue.retry_failed(conn)
    return {"success": True, "data": {"retried": n}}


@router.delete("/queue")
def clear_queue(include_failed: bool = False):
    with get_conn() as conn:
        n = sync_queue.clear(conn, include_failed=include_failed)
    return {"success": True, "data": {"removed": n}}
