from __future__ import annotations

import asyncio
import logging
import os
import secrets
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from gatehouse.config import GatehouseConfigError, GatewaySettings
from gatehouse.gateway.base import (
    RUNTIME_NOT_INSTALLED,
    CommandNotFoundError,
    GatewayError,
    GatewayEventHook,
    GatewayInfo,
    GatewayStatus,
    LockError,
    MissingCredentialsError,
    PortInUseError,
    ProcessExitedEarlyError,
    ProcessSpawnError,
    ReadinessTimeoutError,
    RuntimeNotInstalledError,
)
from gatehouse.gateway.bootstrap import BootstrapComposer, BootstrapPlan
from gatehouse.process.control import GATEWAY_SIGNATURES, ProcessControl, default_process_control
from gatehouse.process.ports import is_port_open
from gatehouse.runtime.base import ProvisionError
from gatehouse.runtime.provisioner import RuntimeProvisioner

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("gatehouse.gateway.output")

TOOL_PACKAGE = "openclaw"
TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"
TOKEN_PREFIX = "gth_"
STDERR_TAIL_LINES = 40
PUMP_DRAIN_SECONDS = 1.0

PortProbe = Callable[[int], Awaitable[bool]]
SettingsLoader = Callable[[], GatewaySettings]


def generate_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


@dataclass(slots=True)
class SupervisorTiming:
    readiness_attempts: int = 60
    readiness_interval_seconds: float = 0.5
    port_settle_seconds: float = 0.5
    lock_timeout_seconds: float = 10.0


@dataclass(slots=True)
class GatewaySlot:
    """The single owned child process; ``process`` and ``info`` are set and cleared together.

    ``starting`` holds the launch in flight, if any, so concurrent callers share it.
    """

    process: asyncio.subprocess.Process | None = None
    info: GatewayInfo | None = None
    pumps: list[asyncio.Task[None]] = field(default_factory=list)
    starting: asyncio.Task[GatewayInfo] | None = None

    @property
    def occupied(self) -> bool:
        return self.process is not None

    def fill(
        self,
        process: asyncio.subprocess.Process,
        info: GatewayInfo,
        pumps: list[asyncio.Task[None]],
    ) -> None:
        self.process = process
        self.info = info
        self.pumps = pumps

    def clear(self) -> None:
        for task in self.pumps:
            if not task.done():
                task.cancel()
        self.process = None
        self.info = None
        self.pumps = []


async def _pump_output(
    stream: asyncio.StreamReader,
    label: str,
    tail: deque[str] | None = None,
) -> None:
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # over-long line; the reader already discarded it
            continue
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        output_logger.debug("[%s] %s", label, line)
        if tail is not None:
            tail.append(line)


class GatewaySupervisor:
    def __init__(
        self,
        provisioner: RuntimeProvisioner,
        composer: BootstrapComposer,
        settings_loader: SettingsLoader,
        *,
        process_control: ProcessControl | None = None,
        timing: SupervisorTiming | None = None,
        port_probe: PortProbe = is_port_open,
        event_hook: GatewayEventHook | None = None,
        signatures: tuple[str, ...] = GATEWAY_SIGNATURES,
    ) -> None:
        self.provisioner = provisioner
        self.composer = composer
        self.settings_loader = settings_loader
        self.process_control = process_control or default_process_control()
        self.timing = timing or SupervisorTiming()
        self.port_probe = port_probe
        self.event_hook = event_hook
        self.signatures = signatures
        self.slot = GatewaySlot()
        self._lock = asyncio.Lock()

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._lock.acquire(), self.timing.lock_timeout_seconds)
        except TimeoutError as exc:
            raise LockError(
                "Timed out waiting for the gateway slot; another operation is still running."
            ) from exc
        try:
            yield
        finally:
            self._lock.release()

    def _reconcile_slot(self) -> GatewayInfo | None:
        process = self.slot.process
        if process is not None and process.returncode is not None:
            logger.warning(
                "Gateway process %s exited with code %s", process.pid, process.returncode
            )
            self._emit(
                {"event": "gateway_exited", "pid": process.pid, "exit_code": process.returncode}
            )
            self.slot.clear()
        return self.slot.info

    async def start(self) -> GatewayInfo:
        async with self._locked():
            info = self._reconcile_slot()
            if info is not None:
                return info
            pending = self.slot.starting
            if pending is None or pending.done():
                settings = self.settings_loader()
                pending = asyncio.create_task(self._start_fresh(settings))
                self.slot.starting = pending
            else:
                logger.debug("Joining gateway start already in progress")
        return await asyncio.shield(pending)

    async def _start_fresh(self, settings: GatewaySettings) -> GatewayInfo:
        # Runs outside the slot lock; ``slot.starting`` keeps other starts from launching.
        try:
            port = settings.port
            if await self.port_probe(port):
                logger.warning("Port %s is held by an untracked process; sweeping orphans", port)
                await self.sweep_orphans(port)
                await asyncio.sleep(self.timing.port_settle_seconds)
                if await self.port_probe(port):
                    raise PortInUseError(
                        f"Port {port} is already in use by another program. "
                        "Close it or choose a different gateway port.",
                        port=port,
                    )
            process, info, pumps = await self._launch(settings)
            self.slot.fill(process, info, pumps)
            logger.info("Gateway running at %s", info.url)
            return info
        finally:
            self.slot.starting = None

    async def stop(self) -> None:
        pending = self.slot.starting
        if pending is not None and not pending.done():
            logger.info("Waiting for the gateway start in progress before stopping")
            await asyncio.wait({pending})
            if not pending.cancelled() and pending.exception() is not None:
                logger.info("Gateway start failed before stop: %s", pending.exception())
        async with self._locked():
            process = self.slot.process
            port = self.slot.info.port if self.slot.info else None
            if process is not None:
                logger.info("Stopping gateway (pid %s)", process.pid)
                try:
                    await self.process_control.terminate_tree(process)
                except OSError as exc:
                    logger.warning("Error while stopping gateway %s: %s", process.pid, exc)
                self.slot.clear()
                self._emit({"event": "gateway_stopped", "pid": process.pid})
        await self.sweep_orphans(port if port is not None else self._sweep_port())

    async def status(self) -> GatewayStatus:
        if not self.provisioner.is_installed():
            return GatewayStatus(
                running=False,
                error_code=RUNTIME_NOT_INSTALLED,
                error="Node.js runtime is not installed.",
            )
        try:
            async with self._locked():
                info = self._reconcile_slot()
                starting = info is None and self.slot.starting is not None
                return GatewayStatus(running=self.slot.occupied, info=info, starting=starting)
        except LockError as exc:
            return GatewayStatus(running=False, error_code=exc.code, error=str(exc))

    async def sweep_orphans(self, port: int | None = None) -> list[int]:
        killed = await asyncio.to_thread(
            self.process_control.sweep_orphans, port, self.signatures
        )
        self._emit({"event": "gateway_sweep", "port": port, "killed": killed})
        return killed

    def _sweep_port(self) -> int | None:
        try:
            return self.settings_loader().port
        except (GatehouseConfigError, OSError) as exc:
            logger.warning("Could not read gateway port for orphan sweep: %s", exc)
            return None

    @staticmethod
    def _check_credentials(settings: GatewaySettings) -> None:
        if settings.mode == "managed" and not settings.license_key:
            raise MissingCredentialsError(
                "No license key configured. Sign in to use the managed plan.",
                mode=settings.mode,
            )
        if settings.mode == "byo" and not settings.api_key:
            raise MissingCredentialsError(
                f"No {settings.provider} API key configured. Enter your API key in Settings.",
                mode=settings.mode,
            )

    def _build_env(self, plan: BootstrapPlan, token: str) -> dict[str, str]:
        env = dict(os.environ)
        bin_dir = self.provisioner.bin_dir
        if bin_dir is not None:
            existing = env.get("PATH", "")
            env["PATH"] = f"{bin_dir}{os.pathsep}{existing}" if existing else str(bin_dir)
        env.update(plan.env)
        env[TOKEN_ENV] = token
        return env

    def build_command(self, port: int, token: str) -> list[str]:
        try:
            runner = self.provisioner.runner_command()
        except ProvisionError as exc:
            raise RuntimeNotInstalledError(str(exc)) from exc
        return [
            *runner,
            "--yes",
            TOOL_PACKAGE,
            "gateway",
            "--port",
            str(port),
            "--token",
            token,
            "--allow-unconfigured",
        ]

    async def _launch(
        self, settings: GatewaySettings
    ) -> tuple[asyncio.subprocess.Process, GatewayInfo, list[asyncio.Task[None]]]:
        if not self.provisioner.is_installed():
            raise RuntimeNotInstalledError(
                "Node.js runtime not installed. Wait for the download to finish "
                "or install it from Settings."
            )
        self._check_credentials(settings)

        port = settings.port
        token = generate_token()
        plan = self.composer.compose(settings)
        await asyncio.to_thread(self.composer.write, plan)
        command = self.build_command(port, token)

        logger.info("Starting gateway on port %s (model %s)", port, plan.primary_model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(plan, token),
                **self.process_control.spawn_options(),
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start gateway: {exc}", port=port) from exc

        if process.stdout is None or process.stderr is None:
            await self.process_control.terminate_tree(process)
            raise ProcessSpawnError("Gateway process did not expose its output.", port=port)

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        pumps = [
            asyncio.create_task(_pump_output(process.stdout, "stdout")),
            asyncio.create_task(_pump_output(process.stderr, "stderr", stderr_tail)),
        ]
        self._emit({"event": "gateway_spawned", "pid": process.pid, "port": port})

        try:
            await self._wait_until_ready(process, port, stderr_tail, pumps)
        except (GatewayError, asyncio.CancelledError):
            for task in pumps:
                task.cancel()
            # An exited leader can still leave npx descendants in its process group.
            await self.process_control.terminate_tree(process)
            raise

        return process, GatewayInfo(url=f"ws://localhost:{port}", port=port, token=token), pumps

    async def _wait_until_ready(
        self,
        process: asyncio.subprocess.Process,
        port: int,
        stderr_tail: deque[str],
        pumps: list[asyncio.Task[None]],
    ) -> None:
        for attempt in range(self.timing.readiness_attempts):
            if process.returncode is not None:
                await self._raise_exited_early(process, port, stderr_tail, pumps)
            if await self.port_probe(port):
                logger.info("Gateway ready after %s attempts", attempt + 1)
                self._emit({"event": "gateway_ready", "pid": process.pid, "attempts": attempt + 1})
                return
            await asyncio.sleep(self.timing.readiness_interval_seconds)

        if process.returncode is not None:
            await self._raise_exited_early(process, port, stderr_tail, pumps)
        ceiling = self.timing.readiness_attempts * self.timing.readiness_interval_seconds
        raise ReadinessTimeoutError(
            f"Gateway did not open port {port} within {ceiling:.0f}s. "
            "Check your internet connection and try again.",
            port=port,
        )

    async def _raise_exited_early(
        self,
        process: asyncio.subprocess.Process,
        port: int,
        stderr_tail: deque[str],
        pumps: list[asyncio.Task[None]],
    ) -> None:
        await asyncio.wait(pumps, timeout=PUMP_DRAIN_SECONDS)
        exit_code = process.returncode
        stderr = "\n".join(stderr_tail)
        self._emit(
            {
                "event": "gateway_exited_early",
                "pid": process.pid,
                "exit_code": exit_code,
                "stderr": stderr[-400:],
            }
        )
        if self.process_control.is_command_not_found(exit_code):
            raise CommandNotFoundError(
                f"Gateway command not found (exit code {exit_code}). "
                "Reinstall the runtime from Settings.",
                exit_code=exit_code,
                stderr=stderr,
                port=port,
            )
        raise ProcessExitedEarlyError(
            f"Gateway process exited unexpectedly with code {exit_code}. "
            "Another gateway may already be running; try restarting the app.",
            exit_code=exit_code,
            stderr=stderr,
            port=port,
        )
