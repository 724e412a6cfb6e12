from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import psutil

logger = logging.getLogger(__name__)

GATEWAY_SIGNATURES = ("openclaw-gateway", "openclaw gateway")


class ProcessControl(ABC):
    """Platform-specific process group handling for the gateway child."""

    command_not_found_codes: frozenset[int] = frozenset()

    def __init__(self, grace_seconds: float = 0.5) -> None:
        self.grace_seconds = grace_seconds

    @abstractmethod
    def spawn_options(self) -> dict[str, Any]:
        """Keyword arguments that place the child in its own process group."""

    @abstractmethod
    async def _signal_tree(self, pid: int) -> None:
        """Terminate ``pid`` and every descendant."""

    def is_command_not_found(self, exit_code: int | None) -> bool:
        return exit_code in self.command_not_found_codes

    async def terminate_tree(self, process: asyncio.subprocess.Process) -> None:
        await self._signal_tree(process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    def sweep_orphans(
        self,
        port: int | None,
        signatures: Iterable[str] = GATEWAY_SIGNATURES,
    ) -> list[int]:
        """Kill gateway-like processes left over from earlier sessions.

        Matches by listening port and by command line. Failures on individual
        processes are logged and skipped; the sweep never raises.
        """
        targets: set[int] = set()
        if port is not None:
            try:
                targets.update(self._pids_on_port(port))
            except (psutil.Error, OSError) as exc:
                logger.warning("Could not list processes on port %s: %s", port, exc)
        patterns = [item.lower() for item in signatures if item]
        if patterns:
            try:
                targets.update(self._pids_matching(patterns))
            except (psutil.Error, OSError) as exc:
                logger.warning("Could not scan process command lines: %s", exc)
        targets -= {os.getpid(), os.getppid()}

        killed: list[int] = []
        for pid in sorted(targets):
            try:
                psutil.Process(pid).kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.Error as exc:
                logger.warning("Could not kill orphaned process %s: %s", pid, exc)
                continue
            logger.info("Killed orphaned gateway process %s", pid)
            killed.append(pid)
        return killed

    @staticmethod
    def _pids_on_port(port: int) -> set[int]:
        pids: set[int] = set()
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            # macOS needs root for the global table; fall back to per-process lookups
            return ProcessControl._pids_on_port_per_process(port)
        for conn in connections:
            if conn.pid and conn.laddr and conn.laddr.port == port:
                if conn.status == psutil.CONN_LISTEN:
                    pids.add(conn.pid)
        return pids

    @staticmethod
    def _pids_on_port_per_process(port: int) -> set[int]:
        pids: set[int] = set()
        for proc in psutil.process_iter(["pid"]):
            try:
                for conn in proc.net_connections(kind="inet"):
                    if not conn.laddr or conn.laddr.port != port:
                        continue
                    if conn.status == psutil.CONN_LISTEN:
                        pids.add(proc.pid)
                        break
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids

    @staticmethod
    def _pids_matching(patterns: list[str]) -> set[int]:
        pids: set[int] = set()
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = " ".join(proc.info.get("cmdline") or []).lower()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if cmdline and any(pattern in cmdline for pattern in patterns):
                pids.add(proc.info["pid"])
        return pids


class PosixProcessControl(ProcessControl):
    command_not_found_codes = frozenset({127})

    def spawn_options(self) -> dict[str, Any]:
        return {"start_new_session": True}

    async def _signal_tree(self, pid: int) -> None:
        # start_new_session makes the child its own group leader, so pgid == pid
        try:
            os.killpg(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        await asyncio.sleep(self.grace_seconds)
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


class WindowsProcessControl(ProcessControl):
    # cmd.exe reports "is not recognized as an internal or external command" as 9009
    command_not_found_codes = frozenset({9009})

    def spawn_options(self) -> dict[str, Any]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    async def _signal_tree(self, pid: int) -> None:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill",
                "/F",
                "/T",
                "/PID",
                str(pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("taskkill unavailable for pid %s: %s", pid, exc)
            return
        await killer.wait()


def default_process_control(grace_seconds: float = 0.5) -> ProcessControl:
    if os.name == "nt":
        return WindowsProcessControl(grace_seconds)
    return PosixProcessControl(grace_seconds)
