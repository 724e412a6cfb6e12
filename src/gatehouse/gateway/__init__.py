from gatehouse.gateway.base import (
    CommandNotFoundError,
    ConfigWriteError,
    GatewayError,
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
from gatehouse.gateway.supervisor import GatewaySlot, GatewaySupervisor, SupervisorTiming

__all__ = [
    "BootstrapComposer",
    "BootstrapPlan",
    "CommandNotFoundError",
    "ConfigWriteError",
    "GatewayError",
    "GatewayInfo",
    "GatewaySlot",
    "GatewayStatus",
    "GatewaySupervisor",
    "LockError",
    "MissingCredentialsError",
    "PortInUseError",
    "ProcessExitedEarlyError",
    "ProcessSpawnError",
    "ReadinessTimeoutError",
    "RuntimeNotInstalledError",
    "SupervisorTiming",
]
