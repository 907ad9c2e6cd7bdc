"""
Supervisor: owns the server port and the running local server.

Start sequence for one port:
  probe -> (busy: adopt a healthy listener, or clear the holder with bounded retries)
  -> lease/release hand-off -> launch -> wait for a readiness marker or /health
Every path ends in a StartResult; nothing here raises into the host application.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import logs
from .config import Settings, settings as default_settings
from .errors import (
    HealthCheckFailed,
    PortConflict,
    ProcessExited,
    PortUnavailable,
    StartError,
    StartupTimeout,
    best_effort_async,
)
from .health import HealthProber
from .ports import PortOps


class ServerState(str, enum.Enum):
    STOPPED = "stopped"
    RESERVING = "reserving"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED_BY_REQUEST = "stopped_by_request"


@dataclass
class ServerHandle:
    port: int
    process_ref: Optional[object] = None
    state: ServerState = ServerState.STOPPED
    started_at: Optional[datetime] = None
    adopted: bool = False


@dataclass
class StartResult:
    success: bool
    port: int
    error: Optional[str] = None
    message: str = ""
    adopted: bool = False
    remediation: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def failed(cls, port: int, exc: StartError) -> "StartResult":
        info = exc.to_dict()
        details = {k: v for k, v in info.items() if k not in {"error", "message", "remediation"}}
        return cls(False, port, error=exc.kind, message=exc.message, remediation=exc.remediation, details=details)

    def to_dict(self) -> dict:
        out = {"success": self.success, "port": self.port}
        if self.error:
            out["error"] = self.error
        if self.message:
            out["message"] = self.message
        if self.adopted:
            out["adopted"] = True
        if self.remediation:
            out["remediation"] = self.remediation
        out.update(self.details)
        return out


LauncherFactory = Callable[[], object]


class Supervisor:
    def __init__(
        self,
        cfg: Settings = default_settings,
        *,
        launchers: Optional[List[LauncherFactory]] = None,
        ports: Optional[PortOps] = None,
        prober: Optional[HealthProber] = None,
    ):
        self.cfg = cfg
        self.launchers: List[LauncherFactory] = list(launchers or [])
        self.ports = ports or PortOps(cfg.host, release_wait=cfg.port_release_wait, lease_max_hold=cfg.lease_max_hold)
        self.prober = prober or HealthProber(cfg.base_url, cfg.health_timeout, cfg.health_interval)

        self.handle: Optional[ServerHandle] = None
        self.launcher = None
        self.last_result: Optional[StartResult] = None
        self.consecutive_misses = 0
        self.escalated: Optional[HealthCheckFailed] = None
        self.wanted = False

        self._active_factory: Optional[LauncherFactory] = None
        self._start_lock = asyncio.Lock()
        self._starting = False
        self._monitor_task: Optional[asyncio.Task] = None

    # --- lifecycle ---

    def init(self) -> None:
        for d in (self.cfg.data_dir, self.cfg.logs_dir):
            d.mkdir(parents=True, exist_ok=True)
        logs.info(f"Supervisor ready: port {self.cfg.port}, data dir {self.cfg.data_dir}")

    async def start(self) -> StartResult:
        self.wanted = True
        result = await self.boot()
        self.start_monitoring()
        return result

    async def stop(self) -> None:
        self.wanted = False
        await self.stop_monitoring()
        await self.stop_server()

    async def dispose(self) -> None:
        await self.stop()
        self.launchers = []
        self._active_factory = None
        self.handle = None

    @property
    def starting(self) -> bool:
        return self._starting

    # --- start / stop ---

    def _prober_for(self, port: int) -> HealthProber:
        if port == self.cfg.port:
            return self.prober
        return self.prober.for_port(port)

    def _adopt(self, handle: ServerHandle) -> StartResult:
        handle.state = ServerState.HEALTHY
        handle.adopted = True
        handle.process_ref = None
        handle.started_at = datetime.now(timezone.utc)
        self.launcher = None
        self.consecutive_misses = 0
        logs.info(f"A healthy server is already listening on port {handle.port}; using it")
        return StartResult(True, handle.port, message="Adopted existing server", adopted=True)

    async def start_server(self, port: Optional[int] = None, factory: Optional[LauncherFactory] = None) -> StartResult:
        port = port or self.cfg.port
        async with self._start_lock:
            self._starting = True
            try:
                result = await self._start_locked(port, factory)
            except StartError as ex:
                logs.error(f"Server start failed on port {port}: {ex.kind}: {ex.message}")
                result = StartResult.failed(port, ex)
            except Exception as ex:
                logs.error(f"Server start failed on port {port}: {ex}")
                result = StartResult(False, port, error="StartError", message=str(ex))
            finally:
                self._starting = False
            self.last_result = result
            return result

    def _running_on(self, port: int) -> bool:
        h = self.handle
        if h is None or h.port != port or h.state != ServerState.HEALTHY:
            return False
        return h.adopted or (self.launcher is not None and self.launcher.is_alive())

    async def _start_locked(self, port: int, factory: Optional[LauncherFactory]) -> StartResult:
        if self._running_on(port):
            return StartResult(True, port, message="Server already running", adopted=self.handle.adopted)

        factory = factory or self._active_factory or (self.launchers[0] if self.launchers else None)
        if factory is None:
            raise StartError("no launcher configured", port=port)

        handle = ServerHandle(port=port, state=ServerState.RESERVING)
        self.handle = handle
        prober = self._prober_for(port)

        if not await self.ports.is_free(port):
            # A previous run's server may still be alive and fine.
            if await prober.check_health():
                return self._adopt(handle)
            if not await self._clear_port(port):
                if await prober.check_health():
                    return self._adopt(handle)
                handle.state = ServerState.STOPPED
                raise PortUnavailable(
                    f"port {port} is in use and could not be freed after {self.cfg.port_retry_attempts} attempts",
                    port=port,
                )

        last: Optional[StartError] = None
        for cycle in range(1 + max(0, self.cfg.startup_retries)):
            try:
                return await self._launch_once(handle, port, factory, prober)
            except StartupTimeout as ex:
                last = ex
                logs.warning(f"Startup attempt {cycle + 1} timed out on port {port}")
        handle.state = ServerState.UNHEALTHY
        raise last

    async def _clear_port(self, port: int) -> bool:
        attempts = max(1, self.cfg.port_retry_attempts)
        for attempt in range(1, attempts + 1):
            await best_effort_async(f"free port {port}", self.ports.free_port, port)
            if await self.ports.is_free(port):
                return True
            logs.warning(f"Port {port} still busy (attempt {attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(self.cfg.port_retry_backoff)
        return False

    async def _launch_once(self, handle: ServerHandle, port: int, factory: LauncherFactory, prober: HealthProber) -> StartResult:
        handle.state = ServerState.STARTING

        # Strict hand-off: the lease is closed before the real server binds.
        lease = self.ports.lease(port)
        lease.acquire()
        lease.release()
        if lease.overheld:
            raise PortConflict(f"port {port} lease held for {lease.held_for:.2f}s", port=port)
        await asyncio.sleep(self.cfg.lease_grace)

        launcher = factory()
        self.launcher = launcher
        handle.process_ref = getattr(launcher, "pid", None)
        await launcher.launch(port)

        ready = await self._await_ready(launcher, prober, port)
        if not ready and not await prober.check_health():
            await best_effort_async("stop unresponsive server", launcher.stop)
            self.launcher = None
            raise StartupTimeout(f"server on port {port} not ready after {self.cfg.startup_timeout:.0f}s", port=port)

        handle.state = ServerState.HEALTHY
        handle.started_at = datetime.now(timezone.utc)
        handle.process_ref = getattr(launcher, "pid", None)
        self._active_factory = factory
        self.consecutive_misses = 0
        name = getattr(launcher, "name", "server")
        logs.info(f"Local server ({name}) healthy on port {port}")
        return StartResult(True, port, message=f"{name} server running")

    async def _await_ready(self, launcher, prober: HealthProber, port: int) -> bool:
        async def _poll_health():
            while True:
                if await prober.check_health():
                    return True
                await asyncio.sleep(self.cfg.health_interval)

        ready_t = asyncio.create_task(launcher.ready.wait())
        exit_t = asyncio.create_task(launcher.exited.wait())
        health_t = asyncio.create_task(_poll_health())
        tasks = {ready_t, exit_t, health_t}
        try:
            done, _pending = await asyncio.wait(tasks, timeout=self.cfg.startup_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if exit_t in done and ready_t not in done and health_t not in done:
            await best_effort_async("stop failed server", launcher.stop)
            self.launcher = None
            err = getattr(launcher, "exit_error", None)
            if isinstance(err, StartError):
                raise err
            detail = f": {err}" if err else ""
            raise ProcessExited(f"server exited before it was ready{detail}", port=port)
        return bool(done)

    async def stop_server(self) -> None:
        launcher = self.launcher
        self.launcher = None
        if launcher is not None:
            await best_effort_async("stop server", launcher.stop)
        if self.handle is not None:
            self.handle.state = ServerState.STOPPED_BY_REQUEST
            self.handle.process_ref = None

    async def restart_server(self) -> dict:
        logs.info("Restart requested")
        h = self.handle
        if h is not None and h.adopted:
            # An adopted server belongs to another process; only its health is re-checked.
            logs.info(f"Server on port {h.port} was adopted; not restarting it")
        else:
            await self.stop_server()
            await asyncio.sleep(self.cfg.restart_delay)
        result = await self.start_server()
        if result.success and result.adopted:
            return {"success": True, "message": "Adopted existing server; it was not restarted", "adopted": True}
        if result.success:
            return {"success": True, "message": "Server restarted"}
        return {"success": False, "message": result.message or "Server restart failed"}

    async def boot(self) -> StartResult:
        """Preferred launcher first, then the fallbacks; bounded attempts."""
        attempts = max(1, self.cfg.boot_attempts)
        result = StartResult(False, self.cfg.port, error="StartError", message="no launcher configured")
        for attempt in range(1, attempts + 1):
            for factory in self.launchers:
                result = await self.start_server(factory=factory)
                if result.success:
                    return result
                if result.error == PortUnavailable.kind:
                    break
            if attempt < attempts:
                logs.warning(f"Boot attempt {attempt}/{attempts} failed: {result.message}; retrying")
                await asyncio.sleep(self.cfg.boot_retry_delay)
        logs.error(f"No local server available after {attempts} attempts: {result.message}")
        return result

    # --- control loop ---

    def _server_alive(self) -> bool:
        h = self.handle
        if h is None:
            return False
        if h.adopted:
            return True
        return self.launcher is not None and self.launcher.is_alive()

    async def check_once(self) -> str:
        if self._starting:
            return "skipped"
        if not self.wanted:
            return "idle"
        h = self.handle
        if h is not None and h.state == ServerState.STOPPED_BY_REQUEST:
            return "idle"

        if not self._server_alive():
            logs.warning("Local server is not running; restarting")
            result = await self.start_server(h.port if h else None)
            return "restarted" if result.success else "restart_failed"

        if await self._prober_for(h.port).check_health():
            self.consecutive_misses = 0
            h.state = ServerState.HEALTHY
            return "healthy"

        self.consecutive_misses += 1
        h.state = ServerState.UNHEALTHY
        if self.consecutive_misses < max(1, self.cfg.unhealthy_threshold):
            logs.warning(f"Health check missed ({self.consecutive_misses}/{self.cfg.unhealthy_threshold})")
            return "unhealthy"

        self.escalated = HealthCheckFailed(f"{self.consecutive_misses} consecutive health checks failed", port=h.port)
        self.consecutive_misses = 0
        if h.adopted:
            # Nothing of ours to stop; the start sequence clears the silent holder and launches our own.
            logs.error(f"{self.escalated.message}; adopted server dropped, taking over port {h.port}")
        else:
            logs.error(f"{self.escalated.message}; restarting local server")
            await self.stop_server()
        result = await self.start_server(h.port)
        return "restarted" if result.success else "restart_failed"

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.supervisor_interval)
            try:
                await self.check_once()
            except Exception as ex:
                logs.error(f"Supervisor check failed: {ex}")

    def start_monitoring(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor())

    async def stop_monitoring(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # --- status ---

    def status(self) -> dict:
        h = self.handle
        running = h is not None and h.state == ServerState.HEALTHY and self._server_alive()
        return {
            "running": running,
            "port": h.port if h else self.cfg.port,
            "state": (h.state.value if h else ServerState.STOPPED.value),
            "adopted": bool(h and h.adopted),
            "startedAt": h.started_at.isoformat() if h and h.started_at else None,
            "databasePath": str(self.cfg.database_path),
            "lastError": self.last_result.error if self.last_result and not self.last_result.success else None,
        }
