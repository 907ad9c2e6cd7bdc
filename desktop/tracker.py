"""
Connectivity & sync tracker consumed by the UI.

Two independent inputs: the platform's online/offline notifications, and the local
server's /api/sync/status counters. Listeners get a SyncStatus whenever the
combined view changes.
"""

import asyncio
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from . import client, logs
from .config import settings

Listener = Callable[["SyncStatus"], None]


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectionState(_Camel):
    status: Literal["online", "offline", "checking", "error"] = "checking"
    type: str = "sqlite"
    is_online: bool = False
    is_offline: bool = True

    @model_validator(mode="after")
    def _exclusive(self):
        # Never both.
        self.is_offline = not self.is_online
        return self


class SyncCounters(_Camel):
    in_progress: bool = False
    last_sync: Optional[str] = None
    pending_items: int = 0
    synced_items: int = 0
    failed_items: int = 0
    current_operation: Optional[str] = None
    queue_items: int = 0


class LocalDatabase(_Camel):
    connected: bool = False
    path: str = ""


class RemoteDatabase(_Camel):
    connected: bool = False
    configured: bool = False


class Databases(_Camel):
    local: LocalDatabase = Field(default_factory=LocalDatabase)
    remote: RemoteDatabase = Field(default_factory=RemoteDatabase)


class SyncStatus(_Camel):
    connection: ConnectionState = Field(default_factory=ConnectionState)
    sync: SyncCounters = Field(default_factory=SyncCounters)
    databases: Databases = Field(default_factory=Databases)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class SyncTracker:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        interval: float = 5.0,
        network_online: bool = True,
        fetch: Optional[client.Fetch] = None,
    ):
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.timeout = timeout
        self.interval = interval
        self.network_online = network_online
        self._fetch = fetch or client.fetch
        self._status: Optional[SyncStatus] = None
        self._server_reachable = False
        self._last_emitted: Optional[SyncStatus] = None
        self._listeners: List[Listener] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._closed = False

    # --- http ---

    async def _request(self, method: str, path: str, params: Optional[dict] = None) -> dict:
        url = client.build_url(self.base_url, path, params)
        try:
            code, raw = await asyncio.to_thread(self._fetch, method, url, self.timeout, None)
            body = client.decode_json(raw)
            if not isinstance(body, dict):
                raise ValueError("unexpected response body")
            if code >= 400 and "success" not in body:
                body = {"success": False, "message": f"HTTP {code}"}
            return body
        except client.REQUEST_ERRORS as ex:
            logs.warning(f"Sync request {method} {path} failed: {ex}")
            return {"success": False, "message": str(ex) or ex.__class__.__name__}

    # --- status ---

    def _connection(self) -> ConnectionState:
        if not self.network_online:
            return ConnectionState(status="offline", is_online=False)
        if self._status is None:
            return ConnectionState(status="checking", is_online=True)
        if not self._server_reachable:
            return ConnectionState(status="error", is_online=True)
        return ConnectionState(status="online", is_online=True)

    def _default(self) -> SyncStatus:
        return SyncStatus(connection=self._connection())

    def _from_server(self, data: dict) -> SyncStatus:
        remote = data.get("remote") or {}
        database = data.get("database") or {}
        return SyncStatus(
            connection=self._connection(),
            sync=SyncCounters.model_validate(data),
            databases=Databases(
                local=LocalDatabase(connected=True, path=str(database.get("path") or "")),
                remote=RemoteDatabase(
                    connected=bool(remote.get("connected")),
                    configured=bool(remote.get("configured")),
                ),
            ),
        )

    def current(self) -> SyncStatus:
        """Last known status with the connection state as of now. Never does I/O."""
        base = self._status or self._default()
        return base.model_copy(update={"connection": self._connection()})

    async def get_status(self) -> SyncStatus:
        body = await self._request("GET", "/api/sync/status")
        self._server_reachable = False
        if body.get("success") and isinstance(body.get("data"), dict):
            try:
                self._status = self._from_server(body["data"])
                self._server_reachable = True
            except ValidationError as ex:
                logs.warning(f"Unexpected sync status payload: {ex}")
        status = self.current()
        self._emit(status)
        return status

    def set_network_state(self, online: bool) -> SyncStatus:
        self.network_online = bool(online)
        status = self.current()
        self._emit(status)
        if self.network_online and self.polling:
            # Refresh counters right away instead of waiting a full interval.
            asyncio.get_running_loop().create_task(self.get_status())
        return status

    # --- listeners ---

    def _emit(self, status: SyncStatus) -> None:
        if self._closed or status == self._last_emitted:
            return
        self._last_emitted = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as ex:
                logs.warning(f"Sync status listener failed: {ex}")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        if self._closed:
            return lambda: None
        self._listeners.append(listener)
        if self._last_emitted is not None:
            listener(self._last_emitted)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- polling ---

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _poll(self, interval: float) -> None:
        while True:
            await self.get_status()
            await asyncio.sleep(interval)

    def start_polling(self, interval: Optional[float] = None) -> None:
        if self._closed or self.polling:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(interval or self.interval))

    def stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()

    def close(self) -> None:
        self.stop_polling()
        self._listeners.clear()
        self._closed = True

    # --- actions ---

    async def check_connectivity(self) -> dict:
        return await self._request("GET", "/api/sync/check-connectivity")

    async def trigger_sync(self) -> dict:
        body = await self._request("POST", "/api/sync/push")
        await self.get_status()
        return body

    async def get_queue(self) -> dict:
        return await self._request("GET", "/api/sync/queue")

    async def retry_failed(self) -> dict:
        return await self._request("POST", "/api/sync/queue/retry")

    async def clear_queue(self, include_failed: bool = False) -> dict:
        params = {"include_failed": "true"} if include_failed else None
        return await self._request("DELETE", "/api/sync/queue", params=params)
