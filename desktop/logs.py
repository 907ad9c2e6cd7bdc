"""
Host log: one append-only file per calendar day under the app data `logs/` dir,
mirrored to stdout. Lines look like `[2026-01-01T10:00:00.000000+00:00] [INFO] message`.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import settings

_logs_dir: Optional[Path] = None


def configure(logs_dir) -> None:
    global _logs_dir
    _logs_dir = Path(logs_dir)


def log_file_path(day: Optional[datetime] = None) -> Path:
    base = _logs_dir or settings.logs_dir
    day = day or datetime.now(timezone.utc)
    return base / f"app-{day.strftime('%Y-%m-%d')}.log"


def log(level: str, message: str) -> None:
    ts = datetime.now(timezone.utc)
    line = f"[{ts.isoformat()}] [{level.upper()}] {message}"
    try:
        print(line, flush=True)
    except (OSError, ValueError):
        pass
    # File name is picked per write so a session that crosses midnight rolls over.
    try:
        path = log_file_path(ts)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError as ex:
        try:
            print(f"[{ts.isoformat()}] [ERROR] could not write log file: {ex}", file=sys.stderr)
        except (OSError, ValueError):
            pass


def info(message: str) -> None:
    log("info", message)


def warning(message: str) -> None:
    log("warn", message)


def error(message: str) -> None:
    log("error", message)
