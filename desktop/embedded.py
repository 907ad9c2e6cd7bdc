"""
In-process launcher: runs the local API on a uvicorn server thread.

The store is only reachable through this server, and the server only through the
supervised port, so a second in-process instance can never open the same store.
"""

import asyncio
import logging
import threading
import time
from typing import Optional

import uvicorn

from . import logs
from .errors import PortConflict, ProcessExited, best_effort
from .ports import probe_port


class _StartupErrors(logging.Handler):
    """Keeps the first error uvicorn logs, so a failed start can say why."""

    def __init__(self):
        super().__init__(level=logging.ERROR)
        self.first: Optional[str] = None

    def emit(self, record: logging.LogRecord) -> None:
        if self.first is None:
            lines = [ln for ln in str(record.getMessage()).splitlines() if ln.strip()]
            self.first = lines[-1].strip() if lines else None


class EmbeddedLauncher:
    name = "embedded"

    def __init__(self, host: str = "127.0.0.1", database_path=None, app=None):
        self.host = host
        self.database_path = str(database_path) if database_path else None
        self._app = app
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self.ready = asyncio.Event()
        self.exited = asyncio.Event()
        self.exit_error: Optional[Exception] = None
        self.pid = None

    def _load_app(self):
        if self._app is not None:
            return self._app
        from backend.app import db
        from backend.app.main import app

        if self.database_path:
            db.DB_PATH = self.database_path
        return app

    async def launch(self, port: int) -> None:
        if self._thread and self._thread.is_alive():
            return
        loop = asyncio.get_running_loop()
        self.ready = asyncio.Event()
        self.exited = asyncio.Event()
        self.exit_error = None

        config = uvicorn.Config(app=self._load_app(), host=self.host, port=port, log_level="warning", access_log=False)
        server = uvicorn.Server(config)
        self._server = server

        def _run() -> None:
            errors = _StartupErrors()
            uvicorn_log = logging.getLogger("uvicorn.error")
            uvicorn_log.addHandler(errors)
            exited_early = False
            try:
                server.run()
            except SystemExit:
                # uvicorn exits this way when the bind fails.
                exited_early = True
            except Exception as ex:
                self.exit_error = ProcessExited(f"embedded server failed: {ex}", port=port)
            finally:
                uvicorn_log.removeHandler(errors)
                if self.exit_error is None and not server.started:
                    self.exit_error = self._startup_failure(port, exited_early, errors.first)
                best_effort("embedded exit notification", loop.call_soon_threadsafe, self.exited.set)

        def _watch_started() -> None:
            while not server.started and (self._thread and self._thread.is_alive()):
                time.sleep(0.05)
            if server.started:
                best_effort("embedded ready notification", loop.call_soon_threadsafe, self.ready.set)

        self._thread = threading.Thread(target=_run, name="embedded-server", daemon=True)
        self._thread.start()
        threading.Thread(target=_watch_started, name="embedded-server-ready", daemon=True).start()
        logs.info(f"Embedded server starting on {self.host}:{port}")

    def _startup_failure(self, port: int, exited_early: bool, cause: Optional[str]):
        # Only a port someone else still holds is a conflict; anything else is the app failing to start.
        if exited_early and not probe_port(self.host, port):
            return PortConflict(f"embedded server could not bind port {port}: {cause or 'address in use'}", port=port)
        return ProcessExited(f"embedded server stopped during startup: {cause or 'application startup failed'}", port=port)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    async def stop(self, timeout: float = 5.0) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join, timeout)
            if self._thread.is_alive():
                logs.warning("Embedded server thread did not stop in time")
        self._thread = None
        self._server = None
