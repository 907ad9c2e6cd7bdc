from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import sync_queue
from .config import settings
from .logs import json_log

OFFLINE_MESSAGE = "Data saved locally. Sync with the remote database is deferred until it is reachable."


def get_sync_engine(request: Request):
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="sync engine not running")
    return engine


def record_change(conn, table_name: str, operation: str, row: dict) -> str:
    """Queue a local write for the remote store, inside the caller's transaction."""
    payload = {"id": row["id"]} if operation == "delete" else dict(row)
    return sync_queue.enqueue(conn, table_name, operation, payload, max_size=settings.sync_max_queue_size)


def write_response(request: Request, data, queued_ids, *, status_code: int = 200):
    """
    Build the success envelope for a local write.

    The write is already committed; a failure while pushing it to the remote store
    only turns the response into an OFFLINE_MODE one.
    """
    engine = getattr(request.app.state, "sync_engine", None)
    deferred = True
    if engine is not None:
        try:
            deferred = engine.propagate(list(queued_ids))
        except Exception as exc:
            json_log("warning", "sync.propagate.error", error=str(exc))
    content = {"success": True, "data": data}
    if deferred and queued_ids:
        content["code"] = "OFFLINE_MODE"
        content["message"] = OFFLINE_MESSAGE
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))
