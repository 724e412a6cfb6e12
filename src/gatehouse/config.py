from __future__ import annotations

import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, get_args

OperatingMode = Literal["byo", "managed"]
ToolProfile = Literal["full", "coding", "minimal"]
ProviderName = Literal["anthropic", "openai", "google", "openrouter"]

APP_NAME = "gatehouse"
CONFIG_FILENAME = "gatehouse.toml"
DEFAULT_GATEWAY_PORT = 18789
DEFAULT_PROXY_URL = "https://proxy.simplestclaw.com"


class GatehouseConfigError(ValueError):
    """Raised when the settings file holds values gatehouse cannot use."""


@dataclass(slots=True)
class GatewayConfig:
    port: int = DEFAULT_GATEWAY_PORT
    auto_start: bool = True
    mode: OperatingMode = "byo"
    provider: ProviderName = "anthropic"
    model: str = ""
    api_key: str = ""
    license_key: str = ""
    proxy_url: str = DEFAULT_PROXY_URL


@dataclass(slots=True)
class ToolsConfig:
    profile: ToolProfile = "coding"
    allow_exec: bool = False


@dataclass(slots=True)
class RuntimeConfig:
    verify_checksum: bool = True
    download_timeout_seconds: float = 300.0
    dist_url: str = "https://nodejs.org/dist"


@dataclass(slots=True)
class SupervisorConfig:
    readiness_attempts: int = 60
    readiness_interval_seconds: float = 0.5
    port_settle_seconds: float = 0.5
    lock_timeout_seconds: float = 10.0
    kill_grace_seconds: float = 0.5


@dataclass(frozen=True, slots=True)
class GatewaySettings:
    """Read-only view of the persisted settings consumed at each start attempt."""

    mode: OperatingMode
    tool_profile: ToolProfile
    allow_exec: bool
    provider: ProviderName
    model: str
    api_key: str
    license_key: str
    port: int
    proxy_url: str = DEFAULT_PROXY_URL

    @property
    def credential(self) -> str:
        return self.license_key if self.mode == "managed" else self.api_key


@dataclass(slots=True)
class GatehouseConfig:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)

    @classmethod
    def default(cls) -> GatehouseConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> GatehouseConfig:
        try:
            config = cls(
                gateway=GatewayConfig(**data.get("gateway", {})),
                tools=ToolsConfig(**data.get("tools", {})),
                runtime=RuntimeConfig(**data.get("runtime", {})),
                supervisor=SupervisorConfig(**data.get("supervisor", {})),
            )
        except TypeError as exc:
            raise GatehouseConfigError(f"Unknown setting: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        _check_choice("gateway.mode", self.gateway.mode, OperatingMode)
        _check_choice("gateway.provider", self.gateway.provider, ProviderName)
        _check_choice("tools.profile", self.tools.profile, ToolProfile)
        if not 0 < int(self.gateway.port) < 65536:
            raise GatehouseConfigError(f"gateway.port out of range: {self.gateway.port}")

    def gateway_settings(self) -> GatewaySettings:
        return GatewaySettings(
            mode=self.gateway.mode,
            tool_profile=self.tools.profile,
            allow_exec=self.tools.allow_exec,
            provider=self.gateway.provider,
            model=self.gateway.model.strip(),
            api_key=self.gateway.api_key.strip(),
            license_key=self.gateway.license_key.strip(),
            port=int(self.gateway.port),
            proxy_url=self.gateway.proxy_url.rstrip("/"),
        )

    def to_dict(self) -> dict:
        return {
            "gateway": {
                "port": self.gateway.port,
                "auto_start": self.gateway.auto_start,
                "mode": self.gateway.mode,
                "provider": self.gateway.provider,
                "model": self.gateway.model,
                "api_key": self.gateway.api_key,
                "license_key": self.gateway.license_key,
                "proxy_url": self.gateway.proxy_url,
            },
            "tools": {
                "profile": self.tools.profile,
                "allow_exec": self.tools.allow_exec,
            },
            "runtime": {
                "verify_checksum": self.runtime.verify_checksum,
                "download_timeout_seconds": self.runtime.download_timeout_seconds,
                "dist_url": self.runtime.dist_url,
            },
            "supervisor": {
                "readiness_attempts": self.supervisor.readiness_attempts,
                "readiness_interval_seconds": self.supervisor.readiness_interval_seconds,
                "port_settle_seconds": self.supervisor.port_settle_seconds,
                "lock_timeout_seconds": self.supervisor.lock_timeout_seconds,
                "kill_grace_seconds": self.supervisor.kill_grace_seconds,
            },
        }


def _check_choice(name: str, value: object, choices: object) -> None:
    allowed = get_args(choices)
    if value not in allowed:
        raise GatehouseConfigError(
            f"{name} must be one of {', '.join(allowed)} (got {value!r})"
        )


@dataclass(frozen=True, slots=True)
class AppPaths:
    data_dir: Path
    state_dir: Path

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME

    @property
    def runtime_dir(self) -> Path:
        return self.data_dir / "runtime"

    @classmethod
    def resolve(
        cls,
        data_dir: Path | None = None,
        state_dir: Path | None = None,
    ) -> AppPaths:
        return cls(
            data_dir=(data_dir or default_data_dir()).expanduser(),
            state_dir=(state_dir or default_state_dir()).expanduser(),
        )


def default_data_dir() -> Path:
    override = os.environ.get("GATEHOUSE_HOME")
    if override:
        return Path(override)
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    if os.name == "nt":
        local = os.environ.get("LOCALAPPDATA")
        base = Path(local) if local else Path.home() / "AppData" / "Local"
        return base / APP_NAME
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / APP_NAME


def default_state_dir() -> Path:
    override = os.environ.get("OPENCLAW_STATE_DIR")
    if override:
        return Path(override)
    return Path.home() / ".openclaw"


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if "." not in rendered:
            rendered = f"{rendered}.0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: GatehouseConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("gateway", "tools", "runtime", "supervisor"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> GatehouseConfig:
    if not path.exists():
        return GatehouseConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise GatehouseConfigError(f"Invalid settings file {path}: {exc}") from exc
    return GatehouseConfig.from_dict(data)


def save_config(path: Path, config: GatehouseConfig) -> None:
    config.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
    if os.name != "nt":
        # holds provider credentials
        path.chmod(0o600)
