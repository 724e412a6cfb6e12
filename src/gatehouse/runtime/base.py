from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

ProgressCallback = Callable[[int, int | None], None]
RuntimeEventHook = Callable[[dict[str, Any]], None]


class ProvisionError(RuntimeError):
    """Raised when the runtime cannot be downloaded, unpacked or verified."""

    code = "provision_error"

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.url = url

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.path is not None:
            payload["path"] = str(self.path)
        if self.url is not None:
            payload["url"] = self.url
        return payload


class PlatformUnsupportedError(ProvisionError):
    code = "platform_unsupported"


class NetworkError(ProvisionError):
    code = "network_error"


class ArchiveError(ProvisionError):
    code = "archive_error"


class VerificationFailedError(ProvisionError):
    code = "verification_failed"


class ChecksumMismatchError(VerificationFailedError):
    code = "checksum_mismatch"


@dataclass(slots=True)
class DownloadState:
    downloading: bool = False
    progress_percent: float = 0.0
    last_error: str | None = None

    def reset(self) -> None:
        self.downloading = True
        self.progress_percent = 0.0
        self.last_error = None


@dataclass(frozen=True, slots=True)
class RuntimeStatus:
    installed: bool
    version: str | None
    runtime_path: str | None
    tool_path: str | None
    downloading: bool
    progress_percent: float
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
