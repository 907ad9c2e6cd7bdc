import os
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def is_packaged() -> bool:
    # PyInstaller and friends set sys.frozen on bundled builds.
    return bool(getattr(sys, "frozen", False))


class Settings:
    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.host = (os.getenv("BACKEND_HOST") or "").strip() or "127.0.0.1"
        self.port = _env_int("BACKEND_PORT", 5001)

        self.app_data_dir = Path((os.getenv("APP_DATA_DIR") or "").strip() or (Path.home() / ".pharmapos"))
        self.data_dir = self.app_data_dir / "data"
        self.logs_dir = self.app_data_dir / "logs"
        self.database_path = self.data_dir / "pharmapos.db"

        self.backend_dist_dir = (os.getenv("BACKEND_DIST_DIR") or "").strip() or None
        self.backend_entry = (os.getenv("BACKEND_ENTRY") or "").strip() or "server.py"
        self.resources_dir = (os.getenv("RESOURCES_DIR") or "").strip() or None

        # Port reservation.
        self.port_retry_attempts = _env_int("PORT_RETRY_ATTEMPTS", 5)
        self.port_retry_backoff = _env_float("PORT_RETRY_BACKOFF", 1.0)
        self.port_release_wait = _env_float("PORT_RELEASE_WAIT", 2.0)
        self.lease_grace = _env_float("PORT_LEASE_GRACE", 0.1)
        self.lease_max_hold = _env_float("PORT_LEASE_MAX_HOLD", 5.0)

        # Startup.
        self.startup_timeout = _env_float("STARTUP_TIMEOUT", 20.0)
        self.startup_retries = _env_int("STARTUP_RETRIES", 1)
        self.health_interval = _env_float("HEALTH_INTERVAL", 1.0)
        # First start of a packaged Windows build (antivirus scans, cold disk) is slow.
        slow = is_packaged() and sys.platform == "win32"
        self.health_timeout = _env_float("HEALTH_TIMEOUT", 10.0 if slow else 3.0)

        # Control loop.
        self.supervisor_interval = _env_float("SUPERVISOR_INTERVAL", 10.0)
        self.unhealthy_threshold = _env_int("UNHEALTHY_THRESHOLD", 3)
        self.boot_attempts = _env_int("BOOT_ATTEMPTS", 5)
        self.boot_retry_delay = _env_float("BOOT_RETRY_DELAY", 2.0)
        self.restart_delay = _env_float("RESTART_DELAY", 1.0)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def load_env_file(path) -> Dict[str, str]:
    """
    Read a KEY=VALUE file. Blank lines and `#` comments are skipped, values may
    contain `=`, and one layer of matching quotes is stripped. A missing file is
    not an error.
    """
    out: Dict[str, str] = {}
    p = Path(path)
    if not p.is_file():
        return out
    for raw in p.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        out[key] = _unquote(value.strip())
    return out


def merge_env(base: Mapping[str, str], file_vars: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Variables already set by the caller always win over the file."""
    merged = dict(base)
    for key, value in (file_vars or {}).items():
        if key not in merged:
            merged[key] = value
    return merged


settings = Settings()
