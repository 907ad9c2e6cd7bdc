from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from . import db
from .config import settings
from .logs import json_log
from .remote import RemoteStore
from .routers.customers import router as customers_router
from .routers.suppliers import router as suppliers_router
from .routers.manufacturers import router as manufacturers_router
from .routers.products import router as products_router
from .routers.purchases import router as purchases_router
from .routers.sync import router as sync_router
from ..workers.sync_worker import SyncEngine

app = FastAPI(title="PharmaPOS Local API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error(status_code: int, message: str, **extra):
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


@app.exception_handler(HTTPException)
def _http_exception(_req: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    extra = {}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        extra["errors"] = exc.errors()
    return _error(400, "validation failed", **extra)


@app.exception_handler(sqlite3.IntegrityError)
def _integrity_error(_req: Request, exc: Exception):
    # Unique SKU, NOT NULL and friends.
    extra = {}
    if settings.env in {"local", "dev"}:
        extra["error"] = str(exc)
    return _error(409, "conflict", **extra)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    extra = {"request_id": rid}
    if settings.env in {"local", "dev"}:
        extra["error"] = str(exc)
    return _error(500, "internal error", **extra)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    # Health probes fire every second during startup; keep them out of the log.
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=dur_ms,
        )
    return response

# The desktop shell loads the UI from file:// or a dev server on another port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(customers_router)
app.include_router(suppliers_router)
app.include_router(manufacturers_router)
app.include_router(products_router)
app.include_router(purchases_router)
app.include_router(sync_router)


@app.on_event("startup")
def _startup():
    imported = db.init_db()
    if imported:
        json_log("info", "startup.legacy_queue_imported", items=imported)
    engine = SyncEngine(RemoteStore())
    app.state.sync_engine = engine
    engine.start()
    json_log(
        "info",
        "startup.ready",
        env=settings.env,
        version=settings.api_version,
        db=db.DB_PATH,
        remote_configured=engine.remote.configured,
    )


@app.on_event("shutdown")
def _shutdown():
    engine = getattr(app.state, "sync_engine", None)
    if engine is not None:
        engine.stop()


def _remote_state() -> str:
    engine = getattr(app.state, "sync_engine", None)
    if engine is None or not engine.remote.configured:
        return "not_configured"
    return "connected" if engine.is_online else "offline"


@app.get("/health")
def health(req: Request):
    # Local only; must answer the same whether or not the network is up.
    try:
        with db.get_conn() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name").fetchall()
        tables = [r["name"] for r in rows if r["name"] in db.BUSINESS_TABLES]
    except sqlite3.Error as exc:
        content = {
            "status": "degraded",
            "database": "sqlite",
            "path": db.DB_PATH,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": _current_request_id(req),
        }
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "database": "sqlite",
        "path": db.DB_PATH,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "remote": _remote_state(),
        "tables": tables,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
    }
