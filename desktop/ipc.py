"""
Control surface the UI layer may call. Transport is up to the host shell; these
are the only calls that can influence the server lifecycle.
"""

from . import logs
from .supervisor import Supervisor


class ControlSurface:
    def __init__(self, supervisor: Supervisor):
        self.supervisor = supervisor

    def get_server_status(self) -> dict:
        return self.supervisor.status()

    async def restart_server(self) -> dict:
        try:
            return await self.supervisor.restart_server()
        except Exception as ex:
            logs.error(f"Restart failed: {ex}")
            return {"success": False, "message": str(ex)}

    def get_storage_info(self) -> dict:
        cfg = self.supervisor.cfg
        return {
            "paths": {
                "appData": str(cfg.app_data_dir),
                "data": str(cfg.data_dir),
                "database": str(cfg.database_path),
                "logs": str(cfg.logs_dir),
            },
            "databaseExists": cfg.database_path.exists(),
        }

    def get_log_file_path(self) -> str:
        return str(logs.log_file_path())

    def handlers(self) -> dict:
        """Channel name -> callable, for shells that dispatch by name."""
        return {
            "get-backend-status": self.get_server_status,
            "restart-backend": self.restart_server,
            "get-storage-info": self.get_storage_info,
            "get-log-file-path": self.get_log_file_path,
        }
