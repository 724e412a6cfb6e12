from __future__ import annotations

import platform
from dataclasses import dataclass

NODE_VERSION = "25.6.0"
NODE_DIST_URL = "https://nodejs.org/dist"

SUPPORTED_TARGETS = frozenset(
    {
        ("darwin", "arm64"),
        ("darwin", "x64"),
        ("linux", "x64"),
        ("linux", "arm64"),
        ("win", "x64"),
    }
)

_OS_ALIASES = {
    "darwin": "darwin",
    "macos": "darwin",
    "linux": "linux",
    "windows": "win",
    "win32": "win",
    "win": "win",
}

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


@dataclass(frozen=True, slots=True)
class RuntimeTarget:
    os_name: str
    arch: str
    version: str = NODE_VERSION
    base_url: str = NODE_DIST_URL

    @property
    def is_windows(self) -> bool:
        return self.os_name == "win"

    @property
    def folder_name(self) -> str:
        return f"node-v{self.version}-{self.os_name}-{self.arch}"

    @property
    def archive_name(self) -> str:
        suffix = ".zip" if self.is_windows else ".tar.gz"
        return f"{self.folder_name}{suffix}"

    @property
    def release_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/v{self.version}"

    @property
    def url(self) -> str:
        return f"{self.release_url}/{self.archive_name}"

    @property
    def checksums_url(self) -> str:
        return f"{self.release_url}/SHASUMS256.txt"

    @property
    def bin_subdir(self) -> str:
        # Windows archives keep executables at the top of the folder
        return "" if self.is_windows else "bin"

    @property
    def node_relpath(self) -> str:
        return "node.exe" if self.is_windows else "bin/node"

    @property
    def npx_relpath(self) -> str:
        return "npx.cmd" if self.is_windows else "bin/npx"

    @property
    def npx_cli_relpath(self) -> str:
        if self.is_windows:
            return "node_modules/npm/bin/npx-cli.js"
        return "bin/npx"


def normalize_os(system: str) -> str | None:
    return _OS_ALIASES.get(system.strip().lower())


def normalize_arch(machine: str) -> str | None:
    return _ARCH_ALIASES.get(machine.strip().lower())


def resolve_target(
    system: str | None = None,
    machine: str | None = None,
    *,
    version: str = NODE_VERSION,
    base_url: str = NODE_DIST_URL,
) -> RuntimeTarget | None:
    """Map an OS/CPU pair to its Node.js release, or ``None`` when unsupported."""
    os_name = normalize_os(system if system is not None else platform.system())
    arch = normalize_arch(machine if machine is not None else platform.machine())
    if os_name is None or arch is None or (os_name, arch) not in SUPPORTED_TARGETS:
        return None
    return RuntimeTarget(os_name=os_name, arch=arch, version=version, base_url=base_url)
