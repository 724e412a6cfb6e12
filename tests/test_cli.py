import json
import tomllib
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from gatehouse.cli import cli
from gatehouse.config import load_config
from gatehouse.process.control import ProcessControl
from gatehouse.runtime.base import NetworkError
from gatehouse.runtime.provisioner import RuntimeProvisioner


def _invoke(tmp_path: Path, *args: str) -> Result:
    runner = CliRunner()
    return runner.invoke(
        cli,
        ["--data-dir", str(tmp_path / "data"), "--state-dir", str(tmp_path / "state"), *args],
    )


def test_config_set_and_show(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "config", "set", "gateway.port", "19555")
    assert result.exit_code == 0, result.output
    assert "gateway.port = 19555" in result.output

    result = _invoke(tmp_path, "config", "set", "tools.allow_exec", "yes")
    assert result.exit_code == 0, result.output

    result = _invoke(tmp_path, "config", "set", "gateway.api_key", "sk-secret")
    assert result.exit_code == 0, result.output
    assert "sk-secret" not in result.output

    config = load_config(tmp_path / "data" / "gatehouse.toml")
    assert config.gateway.port == 19555
    assert config.tools.allow_exec is True
    assert config.gateway.api_key == "sk-secret"

    shown = _invoke(tmp_path, "config", "show")
    assert shown.exit_code == 0, shown.output
    assert "sk-secret" not in shown.output
    body = "\n".join(line for line in shown.output.splitlines() if not line.startswith("#"))
    assert tomllib.loads(body)["gateway"]["port"] == 19555

    revealed = _invoke(tmp_path, "config", "show", "--reveal")
    assert "sk-secret" in revealed.output


def test_config_set_rejects_bad_values(tmp_path: Path) -> None:
    unknown = _invoke(tmp_path, "config", "set", "gateway.colour", "blue")
    assert unknown.exit_code != 0
    assert "Unknown setting: gateway.colour" in unknown.output

    bad_choice = _invoke(tmp_path, "config", "set", "gateway.mode", "cloud")
    assert bad_choice.exit_code != 0
    assert "gateway.mode must be one of" in bad_choice.output

    bad_number = _invoke(tmp_path, "config", "set", "gateway.port", "lots")
    assert bad_number.exit_code != 0


def test_runtime_check_and_status_before_install(tmp_path: Path) -> None:
    check = _invoke(tmp_path, "runtime", "check")
    assert check.exit_code == 0, check.output
    payload = json.loads(check.output)
    assert payload["version"] == "25.6.0"
    assert payload["installed"] is False
    assert payload["needs_upgrade"] is False
    assert payload["installed_versions"] == []

    status = _invoke(tmp_path, "runtime", "status")
    assert status.exit_code == 0, status.output
    snapshot = json.loads(status.output)
    assert snapshot["installed"] is False
    assert snapshot["downloading"] is False


def test_status_reports_runtime_not_installed(tmp_path: Path) -> None:
    _invoke(tmp_path, "config", "set", "gateway.port", "19557")

    result = _invoke(tmp_path, "status")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["port"] == 19557
    assert payload["gateway"]["running"] is False
    assert payload["gateway"]["error_code"] == "runtime_not_installed"
    assert payload["runtime"]["installed"] is False


def test_runtime_install_failure_is_reported(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def offline(self: RuntimeProvisioner, progress: object = None) -> None:
        raise NetworkError("Download failed: offline", url="https://nodejs.org/dist")

    monkeypatch.setattr(RuntimeProvisioner, "install", offline)

    result = _invoke(tmp_path, "runtime", "install")

    assert result.exit_code == 1
    assert "Download failed: offline [network_error]" in result.output


def test_run_without_runtime_and_no_install(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "run", "--no-install")

    assert result.exit_code == 1
    assert "Node.js runtime is not installed" in result.output


def test_sweep_reports_killed_processes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[int | None] = []

    def fake_sweep(self: ProcessControl, port: int | None, signatures: object = ()) -> list[int]:
        calls.append(port)
        return [4242]

    monkeypatch.setattr(ProcessControl, "sweep_orphans", fake_sweep)

    result = _invoke(tmp_path, "sweep", "--port", "19999")

    assert result.exit_code == 0, result.output
    assert "Killed 4242" in result.output
    assert calls == [19999]


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output
