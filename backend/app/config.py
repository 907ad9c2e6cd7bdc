import os
from pathlib import Path
from typing import List


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


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        default_db = Path.home() / ".pharmapos" / "data" / "pharmapos.db"
        self.local_db_path = (os.getenv("LOCAL_DB_PATH") or "").strip() or str(default_db)
        # Remote store-of-record. Empty means "standalone": every write stays pending locally.
        self.remote_db_url = (os.getenv("REMOTE_DATABASE_URL") or "").strip()
        self.remote_connect_timeout = _env_int("REMOTE_CONNECT_TIMEOUT", 3)
        self.sync_poll_seconds = _env_float("SYNC_POLL_SECONDS", 5.0)
        self.sync_push_seconds = _env_float("SYNC_PUSH_SECONDS", 30.0)
        self.sync_batch_size = _env_int("SYNC_BATCH_SIZE", 100)
        self.sync_max_attempts = _env_int("SYNC_MAX_ATTEMPTS", 3)
        self.sync_max_queue_size = _env_int("SYNC_MAX_QUEUE_SIZE", 1000)
        # The desktop shell and dev servers talk to the local API from other origins.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173", "file://"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
