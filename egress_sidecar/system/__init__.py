"""Host interaction helpers: bounded subprocesses and local socket checks."""

from egress_sidecar.system.commands import COMMAND_NOT_FOUND, CommandResult, CommandRunner
from egress_sidecar.system.host import detect_os_family, is_port_bound

__all__ = [
    "COMMAND_NOT_FOUND",
    "CommandResult",
    "CommandRunner",
    "detect_os_family",
    "is_port_bound",
]
