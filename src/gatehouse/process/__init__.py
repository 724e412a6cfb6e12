from gatehouse.process.control import (
    GATEWAY_SIGNATURES,
    PosixProcessControl,
    ProcessControl,
    WindowsProcessControl,
    default_process_control,
)
from gatehouse.process.ports import find_free_port, is_port_open

__all__ = [
    "GATEWAY_SIGNATURES",
    "PosixProcessControl",
    "ProcessControl",
    "WindowsProcessControl",
    "default_process_control",
    "find_free_port",
    "is_port_open",
]
