from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from gatehouse.config import (
    AppPaths,
    GatehouseConfig,
    GatewaySettings,
    load_config,
)
from gatehouse.gateway.base import GatewayError, GatewayInfo, GatewayStatus, LockError
from gatehouse.gateway.bootstrap import BootstrapComposer
from gatehouse.gateway.supervisor import GatewaySupervisor, PortProbe, SupervisorTiming
from gatehouse.process.control import ProcessControl, default_process_control
from gatehouse.process.ports import is_port_open
from gatehouse.runtime.base import ProgressCallback, ProvisionError, RuntimeStatus
from gatehouse.runtime.platforms import NODE_VERSION, RuntimeTarget, resolve_target
from gatehouse.runtime.provisioner import RuntimeProvisioner

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def _log_event(event: dict[str, Any]) -> None:
    logger.debug("event: %s", event)


@dataclass(slots=True)
class GatehouseApp:
    """Wires the provisioner and the supervisor together for one host process.

    A GUI shell calls ``on_startup()`` before showing any window and
    ``on_exit()`` when the user quits; everything in between goes through the
    caller-facing operations below.
    """

    paths: AppPaths
    config_path: Path
    config: GatehouseConfig
    provisioner: RuntimeProvisioner
    composer: BootstrapComposer
    supervisor: GatewaySupervisor
    install_task: asyncio.Task[None] | None = None

    def reload_config(self) -> GatehouseConfig:
        self.config = load_config(self.config_path)
        return self.config

    async def start(self) -> GatewayInfo:
        return await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def status(self) -> GatewayStatus:
        return await self.supervisor.status()

    def get_runtime_status(self) -> RuntimeStatus:
        return self.provisioner.status()

    async def install_runtime(self, progress: ProgressCallback | None = None) -> None:
        await self.provisioner.install(progress)

    def is_runtime_installed(self) -> bool:
        return self.provisioner.is_installed() and self.provisioner.is_correct_version()

    def needs_upgrade(self) -> bool:
        return self.provisioner.needs_upgrade()

    async def on_startup(self, *, auto_start: bool | None = None) -> GatewayInfo | None:
        """Clear leftovers from a previous session and get the runtime ready.

        When the runtime is missing a single background install is started and
        the call returns immediately; progress shows up in
        ``get_runtime_status()``.
        """
        config = self.reload_config()
        should_start = config.gateway.auto_start if auto_start is None else auto_start

        await self.supervisor.sweep_orphans(config.gateway.port)
        await asyncio.sleep(config.supervisor.port_settle_seconds)

        if not self.is_runtime_installed():
            if self.install_task is None or self.install_task.done():
                logger.info("Node.js runtime missing; installing in the background")
                self.install_task = asyncio.create_task(
                    self._install_in_background(should_start)
                )
            return None

        if should_start:
            return await self._auto_start()
        return None

    async def on_exit(self) -> None:
        task = self.install_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        try:
            await self.supervisor.stop()
        except LockError as exc:
            logger.warning("Could not stop gateway cleanly on exit: %s", exc)
            await self.supervisor.sweep_orphans(self._configured_port())

    async def _install_in_background(self, then_start: bool) -> None:
        try:
            await self.provisioner.install()
        except ProvisionError as exc:
            # kept in RuntimeStatus.last_error for the caller to show
            logger.error("Background runtime install failed: %s", exc)
            return
        if then_start:
            await self._auto_start()

    async def _auto_start(self) -> GatewayInfo | None:
        try:
            return await self.supervisor.start()
        except GatewayError as exc:
            logger.error("Gateway auto-start failed [%s]: %s", exc.code, exc)
            return None

    def _configured_port(self) -> int:
        return self.config.gateway.port


def build_app(
    data_dir: Path | None = None,
    *,
    config_path: Path | None = None,
    state_dir: Path | None = None,
    target: RuntimeTarget | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    process_control: ProcessControl | None = None,
    port_probe: PortProbe = is_port_open,
    event_hook: EventHook | None = None,
) -> GatehouseApp:
    paths = AppPaths.resolve(data_dir, state_dir)
    resolved_config_path = config_path or paths.config_path
    config = load_config(resolved_config_path)
    hook = event_hook or _log_event

    if target is None:
        target = resolve_target(version=NODE_VERSION, base_url=config.runtime.dist_url)
    provisioner = RuntimeProvisioner(
        paths.runtime_dir,
        target,
        verify_checksum=config.runtime.verify_checksum,
        timeout_seconds=config.runtime.download_timeout_seconds,
        transport=transport,
        event_hook=hook,
        resolve_platform=False,
    )
    composer = BootstrapComposer(paths.state_dir)

    timing = SupervisorTiming(
        readiness_attempts=max(1, int(config.supervisor.readiness_attempts)),
        readiness_interval_seconds=max(0.0, float(config.supervisor.readiness_interval_seconds)),
        port_settle_seconds=max(0.0, float(config.supervisor.port_settle_seconds)),
        lock_timeout_seconds=max(0.1, float(config.supervisor.lock_timeout_seconds)),
    )
    control = process_control or default_process_control(
        max(0.0, float(config.supervisor.kill_grace_seconds))
    )

    def settings_loader() -> GatewaySettings:
        # re-read on every start so edits made while running take effect
        return load_config(resolved_config_path).gateway_settings()

    supervisor = GatewaySupervisor(
        provisioner,
        composer,
        settings_loader,
        process_control=control,
        timing=timing,
        port_probe=port_probe,
        event_hook=hook,
    )
    return GatehouseApp(
        paths=paths,
        config_path=resolved_config_path,
        config=config,
        provisioner=provisioner,
        composer=composer,
        supervisor=supervisor,
    )
