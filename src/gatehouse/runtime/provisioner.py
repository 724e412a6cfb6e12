from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
import threading
from pathlib import Path
from typing import Any

import httpx

from gatehouse.runtime.archive import extract_archive, make_executable
from gatehouse.runtime.base import (
    ChecksumMismatchError,
    DownloadState,
    NetworkError,
    PlatformUnsupportedError,
    ProgressCallback,
    ProvisionError,
    RuntimeEventHook,
    RuntimeStatus,
    VerificationFailedError,
)
from gatehouse.runtime.platforms import RuntimeTarget, resolve_target

logger = logging.getLogger(__name__)

TEMP_DOWNLOAD_NAME = "download.tmp"
VERSION_FOLDER_PREFIX = "node-v"
CHUNK_SIZE = 64 * 1024


class RuntimeProvisioner:
    """Keeps exactly one pinned Node.js runtime unpacked under ``root``.

    Old ``node-v*`` folders are removed before a new version is installed, so
    there is never more than one runtime side by side. ``status()`` is safe to
    call from any thread while an install is running on the event loop.
    """

    def __init__(
        self,
        root: Path,
        target: RuntimeTarget | None = None,
        *,
        verify_checksum: bool = True,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        event_hook: RuntimeEventHook | None = None,
        resolve_platform: bool = True,
    ) -> None:
        self.root = root
        self.target = target if target is not None or not resolve_platform else resolve_target()
        self.verify_checksum = verify_checksum
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.event_hook = event_hook
        self._state = DownloadState()
        self._state_lock = threading.Lock()
        self._install_lock = asyncio.Lock()

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def version(self) -> str | None:
        return self.target.version if self.target else None

    @property
    def install_dir(self) -> Path | None:
        if self.target is None:
            return None
        return self.root / self.target.folder_name

    @property
    def bin_dir(self) -> Path | None:
        if self.install_dir is None or self.target is None:
            return None
        if not self.target.bin_subdir:
            return self.install_dir
        return self.install_dir / self.target.bin_subdir

    @property
    def temp_path(self) -> Path:
        return self.root / TEMP_DOWNLOAD_NAME

    def _existing(self, relpath: str) -> Path | None:
        if self.install_dir is None:
            return None
        candidate = self.install_dir / relpath
        return candidate if candidate.exists() else None

    def node_path(self) -> Path | None:
        return self._existing(self.target.node_relpath) if self.target else None

    def npx_path(self) -> Path | None:
        return self._existing(self.target.npx_relpath) if self.target else None

    def runner_command(self) -> list[str]:
        """Argv prefix that runs the package runner through the bundled runtime."""
        node = self.node_path()
        npx_cli = self._existing(self.target.npx_cli_relpath) if self.target else None
        if node is None or npx_cli is None:
            raise VerificationFailedError(
                "Node.js runtime is not installed.", path=self.install_dir
            )
        return [str(node), str(npx_cli)]

    def is_installed(self) -> bool:
        return self.node_path() is not None and self.npx_path() is not None

    def is_correct_version(self) -> bool:
        return self.install_dir is not None and self.install_dir.is_dir()

    def installed_versions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and entry.name.startswith(VERSION_FOLDER_PREFIX)
        )

    def needs_upgrade(self) -> bool:
        if self.is_correct_version():
            return False
        current = self.target.folder_name if self.target else None
        return any(name != current for name in self.installed_versions())

    def cleanup_old_versions(self) -> list[str]:
        current = self.target.folder_name if self.target else None
        removed: list[str] = []
        try:
            candidates = self.installed_versions()
        except OSError as exc:
            logger.warning("Could not list runtime directory %s: %s", self.root, exc)
            return removed
        for name in candidates:
            if name == current:
                continue
            logger.info("Removing old Node.js version: %s", name)
            try:
                shutil.rmtree(self.root / name)
            except OSError as exc:
                logger.warning("Failed to remove old runtime %s: %s", name, exc)
                continue
            removed.append(name)
        return removed

    def status(self) -> RuntimeStatus:
        with self._state_lock:
            downloading = self._state.downloading
            progress = self._state.progress_percent
            last_error = self._state.last_error
        installed = self.is_installed()
        node = self.node_path()
        npx = self.npx_path()
        return RuntimeStatus(
            installed=installed,
            version=self.version if installed else None,
            runtime_path=str(node) if node else None,
            tool_path=str(npx) if npx else None,
            downloading=downloading,
            progress_percent=progress,
            last_error=last_error,
        )

    def _set_progress(self, percent: float) -> None:
        with self._state_lock:
            self._state.progress_percent = percent

    async def install(self, progress: ProgressCallback | None = None) -> None:
        async with self._install_lock:
            if self.is_installed() and self.is_correct_version():
                return

            with self._state_lock:
                self._state.reset()
            try:
                removed = self.cleanup_old_versions()
                if removed:
                    self._emit({"event": "runtime_cleanup", "removed": removed})

                target = self.target
                if target is None:
                    raise PlatformUnsupportedError("No Node.js build for this platform.")
                try:
                    self.root.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise ProvisionError(
                        f"Failed to create runtime directory: {exc}", path=self.root
                    ) from exc
                await self._download_and_extract(target, progress)
            except ProvisionError as exc:
                with self._state_lock:
                    self._state.last_error = str(exc)
                self._emit({"event": "runtime_install_failed", **exc.to_dict()})
                raise
            finally:
                with self._state_lock:
                    self._state.downloading = False

        logger.info("Node.js %s installed at %s", target.version, self.install_dir)
        self._emit({"event": "runtime_installed", "version": target.version})

    async def _download_and_extract(
        self,
        target: RuntimeTarget,
        progress: ProgressCallback | None,
    ) -> None:
        logger.info("Downloading Node.js from %s", target.url)
        self._emit({"event": "runtime_download_start", "url": target.url})
        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=self.timeout_seconds,
                follow_redirects=True,
            ) as client:
                digest = await self._stream_to_file(client, target.url, progress)
                if self.verify_checksum:
                    expected = await self._expected_digest(client, target)
                    if digest != expected:
                        raise ChecksumMismatchError(
                            f"Checksum mismatch for {target.archive_name}: "
                            f"expected {expected}, got {digest}",
                            path=self.temp_path,
                            url=target.url,
                        )

            self._set_progress(100.0)
            logger.info("Download complete, extracting %s", target.archive_name)
            await asyncio.to_thread(
                extract_archive,
                self.temp_path,
                self.root,
                archive_name=target.archive_name,
            )
        finally:
            self.temp_path.unlink(missing_ok=True)

        if not self.is_installed():
            raise VerificationFailedError(
                "Installation verification failed: node or npx missing after extraction.",
                path=self.install_dir,
            )

        if not target.is_windows and self.bin_dir is not None:
            make_executable(self.bin_dir)

    async def _stream_to_file(
        self,
        client: httpx.AsyncClient,
        url: str,
        progress: ProgressCallback | None,
    ) -> str:
        digest = hashlib.sha256()
        downloaded = 0
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                length = response.headers.get("content-length")
                total = int(length) if length and length.isdigit() else None
                with self.temp_path.open("wb") as handle:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        handle.write(chunk)
                        digest.update(chunk)
                        downloaded += len(chunk)
                        if total:
                            self._set_progress(min(100.0, downloaded / total * 100.0))
                        if progress is not None:
                            progress(downloaded, total)
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Download failed with HTTP {exc.response.status_code}", url=url
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Download failed: {exc}", url=url) from exc
        except OSError as exc:
            raise NetworkError(
                f"Failed to write download: {exc}", path=self.temp_path, url=url
            ) from exc
        return digest.hexdigest()

    async def _expected_digest(self, client: httpx.AsyncClient, target: RuntimeTarget) -> str:
        url = target.checksums_url
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkError(f"Could not fetch checksums: {exc}", url=url) from exc
        for line in response.text.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == target.archive_name:
                return parts[0].lower()
        raise VerificationFailedError(
            f"{target.archive_name} is not listed in SHASUMS256.txt", url=url
        )
