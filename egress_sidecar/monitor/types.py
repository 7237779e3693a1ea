"""Health monitor data models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType


class CheckName(str, Enum):
    """Checks run on every cycle, in execution order."""

    INSTALLATION = "installation"
    CONNECTION = "connection"
    PROXY = "proxy"
    INTERNET = "internet"
    DNS = "dns"


class MonitorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one check in one cycle."""

    check_name: str
    passed: bool
    message: str
    latency_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "check_name": self.check_name,
            "passed": self.passed,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 1),
        }


@dataclass(frozen=True)
class ComponentFlags:
    installed: bool = False
    connected: bool = False
    proxy_working: bool = False
    internet_reachable: bool = False
    dns_working: bool = False

    @classmethod
    def from_checks(cls, checks: Mapping[str, HealthCheckResult]) -> ComponentFlags:
        def passed(name: CheckName) -> bool:
            result = checks.get(name.value)
            return result is not None and result.passed

        return cls(
            installed=passed(CheckName.INSTALLATION),
            connected=passed(CheckName.CONNECTION),
            proxy_working=passed(CheckName.PROXY),
            internet_reachable=passed(CheckName.INTERNET),
            dns_working=passed(CheckName.DNS),
        )

    def to_dict(self) -> dict:
        return {
            "installed": self.installed,
            "connected": self.connected,
            "proxy_working": self.proxy_working,
            "internet_reachable": self.internet_reachable,
            "dns_working": self.dns_working,
        }


@dataclass(frozen=True)
class HealthSnapshot:
    """One timestamped evaluation. Immutable once created."""

    timestamp: datetime
    overall_healthy: bool
    score: int
    checks: Mapping[str, HealthCheckResult] = field(
        default_factory=lambda: MappingProxyType({})
    )
    component_flags: ComponentFlags = field(default_factory=ComponentFlags)
    message: str = ""
    latency_ms: float | None = None  # proxied round trip of the internet check
    issues: tuple[str, ...] = ()
    connection_uptime_seconds: float | None = None
    last_connected: datetime | None = None
    disconnection_count: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.checks, MappingProxyType):
            object.__setattr__(self, "checks", MappingProxyType(dict(self.checks)))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_healthy": self.overall_healthy,
            "score": self.score,
            "message": self.message,
            "checks": {name: result.to_dict() for name, result in self.checks.items()},
            "component_flags": self.component_flags.to_dict(),
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
            "issues": list(self.issues),
            "connection_uptime_seconds": (
                round(self.connection_uptime_seconds, 1)
                if self.connection_uptime_seconds is not None
                else None
            ),
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "disconnection_count": self.disconnection_count,
        }
