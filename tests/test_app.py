import asyncio
import io
import os
import sys
import tarfile
from pathlib import Path
from typing import Any

import httpx
import pytest

from gatehouse.app import GatehouseApp, build_app
from gatehouse.config import GatehouseConfig, save_config
from gatehouse.process.control import PosixProcessControl
from gatehouse.process.ports import find_free_port
from gatehouse.runtime.platforms import RuntimeTarget

TARGET = RuntimeTarget("linux", "x64")

SERVING_GATEWAY = """\
import socket, sys
args = sys.argv[1:]
port = int(args[args.index("--port") + 1])
server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", port))
server.listen()
while True:
    conn, _ = server.accept()
    conn.close()
"""


class RecordingControl(PosixProcessControl):
    def __init__(self) -> None:
        super().__init__(grace_seconds=0.1)
        self.sweeps: list[int | None] = []

    def sweep_orphans(self, port: int | None, signatures: Any = ()) -> list[int]:
        self.sweeps.append(port)
        return []


def _archive() -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for relpath in ("bin/node", "bin/npx"):
            data = b"#!/bin/sh\n"
            info = tarfile.TarInfo(f"{TARGET.folder_name}/{relpath}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _transport(requests: list[str], status: int = 200) -> httpx.MockTransport:
    payload = _archive()

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, content=payload)

    return httpx.MockTransport(handler)


def _write_config(data_dir: Path, port: int, *, auto_start: bool = False) -> None:
    config = GatehouseConfig.default()
    config.gateway.port = port
    config.gateway.auto_start = auto_start
    config.gateway.api_key = "sk-ant-test"
    config.runtime.verify_checksum = False
    config.supervisor.port_settle_seconds = 0.01
    config.supervisor.readiness_interval_seconds = 0.1
    save_config(data_dir / "gatehouse.toml", config)


def _app(
    tmp_path: Path,
    *,
    requests: list[str] | None = None,
    status: int = 200,
    control: RecordingControl | None = None,
) -> GatehouseApp:
    return build_app(
        tmp_path / "data",
        state_dir=tmp_path / "state",
        target=TARGET,
        transport=_transport(requests if requests is not None else [], status),
        process_control=control or RecordingControl(),
    )


def test_build_app_wires_paths_and_config(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", 19123)

    app = _app(tmp_path)

    assert app.config_path == tmp_path / "data" / "gatehouse.toml"
    assert app.provisioner.root == tmp_path / "data" / "runtime"
    assert app.provisioner.verify_checksum is False
    assert app.composer.config_path == tmp_path / "state" / "openclaw.json"
    assert app.supervisor.timing.port_settle_seconds == 0.01
    assert app.supervisor.timing.readiness_attempts == 60
    assert app.supervisor.settings_loader().port == 19123


def test_settings_are_reread_on_each_start(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", 19123)
    app = _app(tmp_path)

    _write_config(tmp_path / "data", 19456)

    assert app.supervisor.settings_loader().port == 19456


def test_startup_installs_runtime_once_in_background(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", find_free_port())
    requests: list[str] = []
    control = RecordingControl()
    app = _app(tmp_path, requests=requests, control=control)

    async def scenario() -> None:
        assert await app.on_startup(auto_start=False) is None
        first_task = app.install_task
        assert first_task is not None
        await app.on_startup(auto_start=False)
        assert app.install_task is first_task
        await first_task

    asyncio.run(scenario())

    assert requests == [TARGET.url]
    assert app.is_runtime_installed() is True
    assert app.needs_upgrade() is False
    status = app.get_runtime_status()
    assert status.installed is True
    assert status.downloading is False
    assert len(control.sweeps) == 2


def test_failed_background_install_is_observable(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", find_free_port())
    app = _app(tmp_path, status=503)

    async def scenario() -> None:
        await app.on_startup(auto_start=False)
        assert app.install_task is not None
        await app.install_task

    asyncio.run(scenario())

    status = app.get_runtime_status()
    assert status.installed is False
    assert status.downloading is False
    assert status.last_error is not None and "503" in status.last_error


def test_startup_with_runtime_present_does_not_download(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", find_free_port())
    requests: list[str] = []
    app = _app(tmp_path, requests=requests)
    asyncio.run(app.install_runtime())
    requests.clear()

    result = asyncio.run(app.on_startup(auto_start=False))

    assert result is None
    assert app.install_task is None
    assert requests == []


def test_needs_upgrade_when_only_old_version_present(tmp_path: Path) -> None:
    _write_config(tmp_path / "data", find_free_port())
    (tmp_path / "data" / "runtime" / "node-v22.0.0-linux-x64").mkdir(parents=True)
    app = _app(tmp_path)

    assert app.needs_upgrade() is True
    assert app.is_runtime_installed() is False

    asyncio.run(app.install_runtime())

    assert app.needs_upgrade() is False
    assert app.provisioner.installed_versions() == [TARGET.folder_name]


def test_exit_without_gateway_sweeps_configured_port(tmp_path: Path) -> None:
    port = find_free_port()
    _write_config(tmp_path / "data", port)
    control = RecordingControl()
    app = _app(tmp_path, control=control)

    asyncio.run(app.on_exit())

    assert control.sweeps == [port]


@pytest.mark.skipif(os.name == "nt", reason="fake runtime uses POSIX shims")
def test_startup_auto_starts_and_exit_stops(tmp_path: Path) -> None:
    port = find_free_port()
    _write_config(tmp_path / "data", port, auto_start=True)
    bin_dir = tmp_path / "data" / "runtime" / TARGET.folder_name / "bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "node").write_text(f'#!/bin/sh\nexec "{sys.executable}" "$@"\n', encoding="utf-8")
    (bin_dir / "node").chmod(0o755)
    (bin_dir / "npx").write_text(SERVING_GATEWAY, encoding="utf-8")
    app = _app(tmp_path)

    async def scenario() -> tuple[bool, bool]:
        try:
            info = await app.on_startup()
            assert info is not None and info.port == port
            running = (await app.status()).running
        finally:
            await app.on_exit()
        return running, (await app.status()).running

    running, after_exit = asyncio.run(scenario())

    assert running is True
    assert after_exit is False
    assert app.supervisor.slot.process is None
