import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

from . import client
from .config import settings


@dataclass
class HealthStatus:
    healthy: bool = False
    last_checked_at: Optional[datetime] = None


class HealthProber:
    """
    Bounded-timeout GET /health against the local server.

    Probes from one prober never overlap: concurrent callers queue on a lock.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        fetch: Optional[client.Fetch] = None,
    ):
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.timeout = timeout or settings.health_timeout
        self.interval = interval or settings.health_interval
        self._fetch = fetch or client.fetch
        self._lock = asyncio.Lock()
        self.status = HealthStatus()

    def for_port(self, port: int) -> "HealthProber":
        host = urlsplit(self.base_url).hostname or "127.0.0.1"
        return HealthProber(f"http://{host}:{port}", self.timeout, self.interval, self._fetch)

    async def check_health(self) -> bool:
        async with self._lock:
            try:
                code, _body = await asyncio.to_thread(self._fetch, "GET", f"{self.base_url}/health", self.timeout, None)
                ok = code == 200
            except client.REQUEST_ERRORS:
                ok = False
            self.status = HealthStatus(healthy=ok, last_checked_at=datetime.now(timezone.utc))
            return ok

    async def wait_for_healthy(self, max_attempts: int = 10, interval: Optional[float] = None) -> bool:
        interval = self.interval if interval is None else interval
        for attempt in range(max(1, int(max_attempts))):
            if await self.check_health():
                return True
            if attempt < max_attempts - 1:
                await asyncio.sleep(interval)
        return False
