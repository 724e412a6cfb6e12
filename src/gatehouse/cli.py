from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from gatehouse import __version__
from gatehouse.app import GatehouseApp, build_app
from gatehouse.config import (
    GatehouseConfig,
    GatehouseConfigError,
    dumps_toml,
    load_config,
    save_config,
)
from gatehouse.gateway.base import GatewayError, GatewayInfo, ProcessExitedEarlyError
from gatehouse.process.ports import is_port_open
from gatehouse.runtime.base import ProvisionError
from gatehouse.runtime.platforms import NODE_VERSION

SECRET_KEYS = {"api_key", "license_key"}
STATUS_POLL_SECONDS = 1.0


@dataclass(slots=True)
class CliOptions:
    data_dir: Path | None
    state_dir: Path | None


def _load_app(ctx: click.Context) -> GatehouseApp:
    options: CliOptions = ctx.obj
    try:
        return build_app(options.data_dir, state_dir=options.state_dir)
    except GatehouseConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _fail(exc: GatewayError | ProvisionError) -> click.ClickException:
    message = f"{exc} [{exc.code}]"
    if isinstance(exc, ProcessExitedEarlyError) and exc.stderr:
        message = f"{message}\n--- gateway stderr ---\n{exc.stderr}"
    return click.ClickException(message)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _install_with_progress(app: GatehouseApp) -> None:
    label = f"Downloading Node.js {NODE_VERSION}"
    with click.progressbar(length=100, label=label) as bar:
        reported = 0

        def progress(downloaded: int, total: int | None) -> None:
            nonlocal reported
            if not total:
                return
            percent = min(100, downloaded * 100 // total)
            if percent > reported:
                bar.update(percent - reported)
                reported = percent

        try:
            asyncio.run(app.install_runtime(progress))
        except ProvisionError as exc:
            raise _fail(exc) from exc


def _mask(data: dict[str, Any]) -> dict[str, Any]:
    masked: dict[str, Any] = {}
    for section, values in data.items():
        masked[section] = {
            key: ("********" if key in SECRET_KEYS and value else value)
            for key, value in values.items()
        }
    return masked


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True
        if lowered in {"false", "no", "0", "off"}:
            return False
        raise click.BadParameter(f"expected a boolean, got {raw!r}")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise click.BadParameter(f"expected an integer, got {raw!r}") from exc
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise click.BadParameter(f"expected a number, got {raw!r}") from exc
    return raw


@click.group()
@click.version_option(__version__, prog_name="gatehouse")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    show_default=True,
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where settings and the Node.js runtime live.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Gateway state directory (config file and workspace).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    log_level: str,
    data_dir: Path | None,
    state_dir: Path | None,
) -> None:
    """Gatehouse CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliOptions(data_dir=data_dir, state_dir=state_dir)


async def _serve(app: GatehouseApp) -> GatewayInfo:
    await app.supervisor.sweep_orphans(app.config.gateway.port)
    info = await app.start()
    click.echo(f"Gateway running at {info.url}")
    click.echo(f"Token: {info.token}")
    try:
        while True:
            await asyncio.sleep(STATUS_POLL_SECONDS)
            status = await app.status()
            if not status.running:
                click.echo("Gateway exited.", err=True)
                break
    finally:
        await app.on_exit()
    return info


@cli.command("run")
@click.option("--install/--no-install", default=True, show_default=True)
@click.pass_context
def run_command(ctx: click.Context, install: bool) -> None:
    app = _load_app(ctx)
    if not app.is_runtime_installed():
        if not install:
            raise click.ClickException(
                "Node.js runtime is not installed. Run 'gatehouse runtime install' first."
            )
        _install_with_progress(app)
    try:
        asyncio.run(_serve(app))
    except (GatewayError, ProvisionError) as exc:
        raise _fail(exc) from exc
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    app = _load_app(ctx)
    port = app.config.gateway.port

    async def collect() -> dict[str, Any]:
        gateway = await app.status()
        return {
            "runtime": app.get_runtime_status().to_dict(),
            "gateway": gateway.to_dict(),
            "port": port,
            "port_open": await is_port_open(port),
        }

    _echo_json(asyncio.run(collect()))


@cli.group("runtime")
def runtime_group() -> None:
    """Manage the bundled Node.js runtime."""


@runtime_group.command("status")
@click.pass_context
def runtime_status_command(ctx: click.Context) -> None:
    app = _load_app(ctx)
    _echo_json(app.get_runtime_status().to_dict())


@runtime_group.command("install")
@click.pass_context
def runtime_install_command(ctx: click.Context) -> None:
    app = _load_app(ctx)
    if app.is_runtime_installed():
        click.echo(f"Node.js {NODE_VERSION} is already installed.")
        return
    _install_with_progress(app)
    status = app.get_runtime_status()
    click.echo(f"Installed Node.js {status.version} at {status.runtime_path}")


@runtime_group.command("check")
@click.pass_context
def runtime_check_command(ctx: click.Context) -> None:
    app = _load_app(ctx)
    target = app.provisioner.target
    _echo_json(
        {
            "version": NODE_VERSION,
            "platform": target.folder_name if target else None,
            "installed": app.is_runtime_installed(),
            "needs_upgrade": app.needs_upgrade(),
            "installed_versions": app.provisioner.installed_versions(),
        }
    )


@cli.command("sweep")
@click.option("--port", type=int, default=None, help="Defaults to the configured port.")
@click.pass_context
def sweep_command(ctx: click.Context, port: int | None) -> None:
    app = _load_app(ctx)
    killed = asyncio.run(app.supervisor.sweep_orphans(port or app.config.gateway.port))
    if not killed:
        click.echo("No orphaned gateway processes found.")
        return
    for pid in killed:
        click.echo(f"Killed {pid}")


@cli.group("config")
def config_group() -> None:
    """Inspect or change settings."""


@config_group.command("show")
@click.option("--reveal", is_flag=True, default=False, help="Print credentials unmasked.")
@click.pass_context
def config_show_command(ctx: click.Context, reveal: bool) -> None:
    app = _load_app(ctx)
    click.echo(f"# {app.config_path}")
    data = app.config.to_dict()
    if not reveal:
        data = _mask(data)
    click.echo(dumps_toml(GatehouseConfig.from_dict(data)), nl=False)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_command(ctx: click.Context, key: str, value: str) -> None:
    app = _load_app(ctx)
    section, _, name = key.partition(".")
    data = load_config(app.config_path).to_dict()
    if section not in data or name not in data[section]:
        raise click.ClickException(f"Unknown setting: {key}")
    data[section][name] = _coerce(value, data[section][name])
    try:
        config = GatehouseConfig.from_dict(data)
        save_config(app.config_path, config)
    except GatehouseConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    shown = "********" if name in SECRET_KEYS else value
    click.echo(f"{key} = {shown}")
