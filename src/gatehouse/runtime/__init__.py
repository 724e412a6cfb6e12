from gatehouse.runtime.base import (
    ArchiveError,
    ChecksumMismatchError,
    NetworkError,
    PlatformUnsupportedError,
    ProvisionError,
    RuntimeStatus,
    VerificationFailedError,
)
from gatehouse.runtime.platforms import NODE_VERSION, RuntimeTarget, resolve_target
from gatehouse.runtime.provisioner import RuntimeProvisioner

__all__ = [
    "ArchiveError",
    "ChecksumMismatchError",
    "NODE_VERSION",
    "NetworkError",
    "PlatformUnsupportedError",
    "ProvisionError",
    "RuntimeProvisioner",
    "RuntimeStatus",
    "RuntimeTarget",
    "VerificationFailedError",
    "resolve_target",
]
