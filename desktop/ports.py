"""
Port probing, reservation and clearing for the local server port.

Everything blocking here is plain sockets/psutil; `PortOps` wraps it for the
asyncio supervisor so no probe or kill ever blocks the event loop.
"""

import asyncio
import os
import re
import socket
import subprocess
import sys
import time
from typing import List, Optional

import psutil

from . import logs
from .errors import PortConflict, best_effort


def _new_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    # On POSIX this only skips TIME_WAIT leftovers; an active listener still blocks
    # the bind. On Windows it would let us steal a live port, so leave it off.
    if os.name != "nt":
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    return sock


def probe_port(host: str, port: int) -> bool:
    """True when nothing is bound to host:port right now."""
    sock = _new_socket()
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortLease:
    """
    Exclusive bind held only between "port looks free" and "real server binds".
    Release it right before handing the port over; never hold it while the server binds.
    """

    def __init__(self, host: str, port: int, max_hold: float = 5.0):
        self.host = host
        self.port = port
        self.max_hold = max_hold
        self.acquired_at: Optional[float] = None
        self.released_at: Optional[float] = None
        self._sock: Optional[socket.socket] = None

    @property
    def held(self) -> bool:
        return self._sock is not None

    @property
    def held_for(self) -> float:
        if self.acquired_at is None:
            return 0.0
        end = self.released_at if self.released_at is not None else time.monotonic()
        return end - self.acquired_at

    @property
    def overheld(self) -> bool:
        return self.held_for > self.max_hold

    def acquire(self) -> "PortLease":
        if self._sock is not None:
            return self
        sock = _new_socket()
        try:
            sock.bind((self.host, self.port))
            # Listening makes the claim exclusive even against other SO_REUSEADDR binds.
            sock.listen(1)
        except OSError as ex:
            sock.close()
            raise PortConflict(f"port {self.port} was taken before the server could start: {ex}", port=self.port)
        self._sock = sock
        self.acquired_at = time.monotonic()
        self.released_at = None
        return self

    def release(self) -> float:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            self.released_at = time.monotonic()
        return self.held_for

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def _lsof_pids(port: int) -> List[int]:
    out = subprocess.run(
        ["lsof", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"],
        capture_output=True,
        text=True,
        timeout=5,
    ).stdout
    return [int(p) for p in out.split() if p.strip().isdigit()]


def _netstat_pids(port: int) -> List[int]:
    out = subprocess.run(["netstat", "-ano", "-p", "TCP"], capture_output=True, text=True, timeout=5).stdout
    pids = []
    for line in out.splitlines():
        parts = line.split()
        if len(parts) >= 5 and parts[3].upper() == "LISTENING" and re.search(rf":{port}$", parts[1]):
            if parts[4].isdigit():
                pids.append(int(parts[4]))
    return pids


def find_port_owners(port: int) -> List[int]:
    """PIDs listening on `port`, excluding this process."""
    me = os.getpid()
    try:
        pids = {
            c.pid
            for c in psutil.net_connections(kind="inet")
            if c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN and c.pid
        }
    except psutil.AccessDenied:
        # macOS without root: fall back to the platform tools.
        lookup = _netstat_pids if sys.platform == "win32" else _lsof_pids
        pids = set(best_effort(f"port owner lookup for {port}", lookup, port) or [])
    pids.discard(me)
    return sorted(pids)


def kill_processes(pids: List[int], timeout: float = 2.0) -> List[int]:
    """Terminate, then kill what is left after `timeout`. Returns the pids still alive."""
    procs = []
    for pid in pids:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            procs.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logs.warning(f"Not allowed to terminate process {pid}")
    if not procs:
        return []
    _gone, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        best_effort(f"kill {proc.pid}", proc.kill)
    _gone, alive = psutil.wait_procs(alive, timeout=timeout)
    return [p.pid for p in alive]


def wait_port_released(host: str, port: int, timeout: float = 2.0, interval: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        if probe_port(host, port):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


class PortOps:
    """Async facade used by the supervisor. Swap it out in tests."""

    def __init__(self, host: str = "127.0.0.1", release_wait: float = 2.0, lease_max_hold: float = 5.0):
        self.host = host
        self.release_wait = release_wait
        self.lease_max_hold = lease_max_hold

    async def is_free(self, port: int) -> bool:
        return await asyncio.to_thread(probe_port, self.host, port)

    async def free_port(self, port: int) -> bool:
        """Best effort: kill whoever listens on `port` and wait for the OS to let go of it."""
        pids = await asyncio.to_thread(find_port_owners, port)
        if pids:
            logs.warning(f"Port {port} is held by pid(s) {pids}; terminating")
            survivors = await asyncio.to_thread(kill_processes, pids, self.release_wait)
            if survivors:
                logs.warning(f"Process(es) {survivors} on port {port} resisted termination")
        return await asyncio.to_thread(wait_port_released, self.host, port, self.release_wait)

    def lease(self, port: int) -> PortLease:
        return PortLease(self.host, port, max_hold=self.lease_max_hold)
