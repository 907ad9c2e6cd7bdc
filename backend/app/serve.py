"""
Run the local API as a standalone process.

Used by the desktop supervisor when it launches the server as a child process; the
"Server running on port N" line on stdout is its readiness marker.
"""

import argparse
import os
import threading
import time

import uvicorn

from . import db
from .config import settings
from .main import app


def _announce_when_started(server: uvicorn.Server, port: int, timeout: float = 30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline and not server.should_exit:
        if server.started:
            print(f"Server running on port {port}", flush=True)
            return
        time.sleep(0.05)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "5001") or 5001))
    parser.add_argument("--db", default=None, help=f"SQLite path (default: {settings.local_db_path})")
    args = parser.parse_args()

    if args.db:
        db.DB_PATH = args.db

    config = uvicorn.Config(app=app, host=args.host, port=args.port, log_level="warning", access_log=False)
    server = uvicorn.Server(config)
    threading.Thread(target=_announce_when_started, args=(server, args.port), daemon=True).start()
    server.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
