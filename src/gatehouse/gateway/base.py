from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

GatewayEventHook = Callable[[dict[str, Any]], None]

RUNTIME_NOT_INSTALLED = "runtime_not_installed"


class GatewayError(RuntimeError):
    """Raised when the gateway cannot be started, stopped or inspected."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        port: int | None = None,
        path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.port = port
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.port is not None:
            payload["port"] = self.port
        if self.path is not None:
            payload["path"] = str(self.path)
        return payload


class PortInUseError(GatewayError):
    code = "port_in_use"


class RuntimeNotInstalledError(GatewayError):
    code = RUNTIME_NOT_INSTALLED


class MissingCredentialsError(GatewayError):
    code = "missing_credentials"

    def __init__(self, message: str, *, mode: str) -> None:
        super().__init__(message)
        self.mode = mode

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["mode"] = self.mode
        return payload


class ProcessSpawnError(GatewayError):
    code = "process_spawn_failed"


class ProcessExitedEarlyError(GatewayError):
    code = "process_exited_early"

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None,
        stderr: str = "",
        port: int | None = None,
    ) -> None:
        super().__init__(message, port=port)
        self.exit_code = exit_code
        self.stderr = stderr

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["exit_code"] = self.exit_code
        payload["stderr"] = self.stderr
        return payload


class CommandNotFoundError(ProcessExitedEarlyError):
    code = "command_not_found"


class ReadinessTimeoutError(GatewayError):
    code = "readiness_timeout"


class LockError(GatewayError):
    code = "lock_error"


class ConfigWriteError(GatewayError):
    code = "config_write_error"


@dataclass(frozen=True, slots=True)
class GatewayInfo:
    url: str
    port: int
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "port": self.port, "token": self.token}


@dataclass(frozen=True, slots=True)
class GatewayStatus:
    running: bool
    info: GatewayInfo | None = None
    error_code: str | None = None
    error: str | None = None
    starting: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "starting": self.starting,
            "info": self.info.to_dict() if self.info else None,
            "error_code": self.error_code,
            "error": self.error,
        }
