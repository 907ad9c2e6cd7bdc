#!/usr/bin/env python3
"""
Desktop host entry point.

Boots the local server (bundled external backend when one is found, the embedded
server otherwise), keeps it alive, and stays up until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import os
import signal
import sys

from . import logs
from .bridge import ChildProcessLauncher, resolve_backend_location
from .config import settings
from .embedded import EmbeddedLauncher
from .errors import BackendNotFound
from .ipc import ControlSurface
from .supervisor import Supervisor
from .tracker import SyncTracker


def build_launchers(cfg=settings, prefer_external: bool = True):
    launchers = []
    if prefer_external:
        try:
            location = resolve_backend_location()
            logs.info(f"Bundled backend found at {location}")
            env = dict(os.environ)
            # Both launchers must open the same store.
            env.setdefault("LOCAL_DB_PATH", str(cfg.database_path))
            launchers.append(lambda: ChildProcessLauncher(location, cfg.backend_entry, base_env=env))
        except BackendNotFound as ex:
            logs.info(f"{ex.message}; {ex.remediation}")
    launchers.append(lambda: EmbeddedLauncher(cfg.host, database_path=cfg.database_path))
    return launchers


async def run(args) -> int:
    if args.port:
        settings.port = args.port
    logs.configure(settings.logs_dir)

    supervisor = Supervisor(settings, launchers=build_launchers(settings, prefer_external=not args.embedded_only))
    supervisor.init()
    control = ControlSurface(supervisor)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    result = await supervisor.start()
    if result.success:
        logs.info(f"Local server ready on port {result.port}" + (" (adopted)" if result.adopted else ""))
    else:
        logs.error(f"No local server available: {result.message}. {result.remediation or ''}".strip())

    tracker = SyncTracker(settings.base_url)
    tracker.subscribe(
        lambda s: logs.info(
            f"Sync: {s.connection.status}, pending {s.sync.pending_items}, "
            f"synced {s.sync.synced_items}, failed {s.sync.failed_items}"
        )
    )
    tracker.start_polling()

    logs.info(f"Status: {control.get_server_status()}")
    logs.info(f"Log file: {control.get_log_file_path()}")
    if args.once:
        stop.set()
    await stop.wait()

    logs.info("Shutting down")
    tracker.close()
    await supervisor.dispose()
    return 0 if result.success else 1


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, default=None, help=f"Server port (default: {settings.port})")
    parser.add_argument("--embedded-only", action="store_true", help="Never launch a bundled external backend")
    parser.add_argument("--once", action="store_true", help="Start the server, report status and exit")
    args = parser.parse_args()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
