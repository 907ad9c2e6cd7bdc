"""
External backend bridge: locate a bundled backend distribution and run it as a
supervised child process.

Locating is an ordered list of resolvers, each a plain callable returning a
directory or None. The first hit wins; no hit means the embedded server is used.
"""

import asyncio
import os
import re
import sys
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import psutil

from . import logs
from .config import Settings, is_packaged, load_env_file, merge_env, settings as default_settings
from .errors import BackendNotFound, LaunchFailed, PortConflict, ProcessExited, best_effort

Resolver = Callable[[], Optional[Path]]

READY_MARKERS = ("Server running on port", "Server is ready", "listening", "Uvicorn running on")
PORT_IN_USE_MARKERS = ("EADDRINUSE", "address already in use", "Only one usage of each socket address")
MISSING_MODULE_MARKERS = ("Cannot find module", "MODULE_NOT_FOUND", "ModuleNotFoundError")


def app_dir() -> Path:
    if is_packaged():
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent


def candidate_dirs(cfg: Settings = default_settings) -> List[Path]:
    base = app_dir()
    resources = Path(cfg.resources_dir) if cfg.resources_dir else base / "resources"
    out = []
    if cfg.backend_dist_dir:
        out.append(Path(cfg.backend_dist_dir))
    out.extend(
        [
            resources / "backend" / "dist",
            resources / "app.unpacked" / "backend" / "dist",
            base / ".." / ".." / "backend" / "dist",
            Path(__file__).resolve().parent / ".." / "backend" / "dist",
        ]
    )
    return out


def make_resolver(
    path: Path,
    entry: str,
    is_dir: Callable[[str], bool] = os.path.isdir,
    is_file: Callable[[str], bool] = os.path.isfile,
) -> Resolver:
    def _resolve() -> Optional[Path]:
        if is_dir(str(path)) and is_file(str(Path(path) / entry)):
            return Path(os.path.normpath(str(path)))
        return None

    return _resolve


def default_resolvers(cfg: Settings = default_settings, is_dir=os.path.isdir, is_file=os.path.isfile) -> List[Resolver]:
    return [make_resolver(p, cfg.backend_entry, is_dir, is_file) for p in candidate_dirs(cfg)]


def resolve_backend_location(resolvers: Optional[List[Resolver]] = None) -> Path:
    """First matching candidate, or BackendNotFound when none match."""
    resolvers = default_resolvers() if resolvers is None else resolvers
    for resolve in resolvers:
        found = resolve()
        if found is not None:
            return found
    raise BackendNotFound("no bundled backend found")


def backend_env(location: Path, port: int, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Caller env, plus `<dist>/../.env` for keys the caller did not set, plus the port."""
    env = merge_env(os.environ if base is None else base, load_env_file(Path(location).parent / ".env"))
    env["PORT"] = str(port)
    env["APP_ENV"] = "production"
    return env


def classify_output(line: str) -> Optional[Exception]:
    if any(m in line for m in PORT_IN_USE_MARKERS):
        return PortConflict(line.strip())
    if any(m in line for m in MISSING_MODULE_MARKERS):
        return LaunchFailed("missing_dependencies", line.strip())
    return None


def is_ready_line(line: str, port: int) -> bool:
    if any(m in line for m in READY_MARKERS):
        return True
    return re.search(rf"\bport:? {port}\b", line) is not None


class ChildProcessLauncher:
    name = "external"

    def __init__(
        self,
        location: Path,
        entry: Optional[str] = None,
        *,
        base_env: Optional[Mapping[str, str]] = None,
        python: Optional[str] = None,
        kill_timeout: float = 2.0,
    ):
        self.location = Path(location)
        self.entry = entry or default_settings.backend_entry
        self.base_env = base_env
        self.python = python or sys.executable
        self.kill_timeout = kill_timeout
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.ready = asyncio.Event()
        self.exited = asyncio.Event()
        self.exit_error: Optional[Exception] = None
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def launch(self, port: int) -> None:
        entry_path = self.location / self.entry
        if not self.location.is_dir() or not entry_path.is_file():
            raise LaunchFailed("bad_path", f"backend entry not found at {entry_path}")

        self.ready = asyncio.Event()
        self.exited = asyncio.Event()
        self.exit_error = None
        self._stopping = False

        logs.info(f"[Backend] Starting server from: {entry_path}")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                self.python,
                str(entry_path),
                cwd=str(self.location),
                env=backend_env(self.location, port, self.base_env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except PermissionError as ex:
            raise LaunchFailed("permission_denied", str(ex))
        except (NotADirectoryError, IsADirectoryError) as ex:
            raise LaunchFailed("bad_path", str(ex))
        except FileNotFoundError as ex:
            raise LaunchFailed("missing_runtime", f"{self.python}: {ex}")

        self._tasks = [
            asyncio.create_task(self._pump(self.proc.stdout, port, "[Backend]")),
            asyncio.create_task(self._pump(self.proc.stderr, port, "[Backend Error]")),
            asyncio.create_task(self._wait_exit()),
        ]

    async def _pump(self, stream, port: int, prefix: str) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logs.log("error" if prefix == "[Backend Error]" else "info", f"{prefix} {line}")
            if self.ready.is_set():
                continue
            problem = classify_output(line)
            if problem is not None:
                if isinstance(problem, PortConflict):
                    problem.port = port
                self.exit_error = self.exit_error or problem
                self.exited.set()
            elif is_ready_line(line, port):
                logs.info(f"[Backend] Server confirmed ready on port {port}")
                self.ready.set()

    async def _wait_exit(self) -> None:
        rc = await self.proc.wait()
        if not self._stopping:
            logs.error(f"[Backend] Process exited with code {rc}")
            if self.exit_error is None:
                self.exit_error = ProcessExited(f"backend exited with code {rc}")
        self.exited.set()

    def is_alive(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    def _kill_tree(self, pid: int) -> None:
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        procs = parent.children(recursive=True) + [parent]
        for p in procs:
            best_effort(f"terminate {p.pid}", p.terminate)
        _gone, alive = psutil.wait_procs(procs, timeout=self.kill_timeout)
        for p in alive:
            best_effort(f"kill {p.pid}", p.kill)

    async def stop(self) -> None:
        if self.proc is None:
            return
        self._stopping = True
        if self.proc.returncode is None:
            logs.info("[Backend] Stopping server...")
            await asyncio.to_thread(self._kill_tree, self.proc.pid)
            try:
                await asyncio.wait_for(self.proc.wait(), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logs.warning(f"[Backend] Process {self.proc.pid} did not exit after kill")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.proc = None
