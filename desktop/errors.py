"""Start failures the supervisor reports to the UI, plus the one place cleanup errors are swallowed."""

from typing import Optional

from . import logs


class StartError(Exception):
    kind = "StartError"
    remediation = "Restart the application. If the problem persists, check the log file."

    def __init__(self, message: str = "", *, port: Optional[int] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.port = port

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "remediation": self.remediation}


class PortUnavailable(StartError):
    kind = "PortUnavailable"
    remediation = "Another program is using the server port. Close it or change BACKEND_PORT."


class PortConflict(StartError):
    kind = "PortConflict"
    remediation = "The server port was taken while the server was starting. Close the other program and restart."


class StartupTimeout(StartError):
    kind = "StartupTimeout"
    remediation = "The local server did not become ready in time. It will be retried automatically."


class ProcessExited(StartError):
    kind = "ProcessExited"
    remediation = "The server process stopped before it was ready. Check the log file for its output."


class BackendNotFound(StartError):
    kind = "BackendNotFound"
    remediation = "No bundled backend was found; the built-in local server is used instead."


class HealthCheckFailed(StartError):
    kind = "HealthCheckFailed"
    remediation = "The local server stopped answering. It is being restarted."


LAUNCH_REMEDIATION = {
    "missing_runtime": "The runtime needed to start the backend is missing. Reinstall the application.",
    "permission_denied": "The backend could not be started because of file permissions. Run the installer again or fix the folder permissions.",
    "bad_path": "The backend files could not be found at the expected location. Reinstall the application.",
    "missing_dependencies": "The backend is missing some of its modules. Reinstall the application.",
}


class LaunchFailed(StartError):
    kind = "LaunchFailed"

    def __init__(self, cause: str, message: str = "", **kwargs):
        if cause not in LAUNCH_REMEDIATION:
            raise ValueError(f"unknown launch failure cause: {cause}")
        super().__init__(message or f"launch failed: {cause}", **kwargs)
        self.cause = cause

    @property
    def remediation(self) -> str:
        return LAUNCH_REMEDIATION[self.cause]

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["cause"] = self.cause
        return out


def best_effort(label: str, fn, *args, **kwargs):
    """Run a cleanup step; log and swallow its failure. Returns None on failure."""
    try:
        return fn(*args, **kwargs)
    except Exception as ex:
        logs.warning(f"{label} failed (ignored): {ex}")
        return None


async def best_effort_async(label: str, fn, *args, **kwargs):
    try:
        return await fn(*args, **kwargs)
    except Exception as ex:
        logs.warning(f"{label} failed (ignored): {ex}")
        return None
