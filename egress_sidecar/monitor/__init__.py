from egress_sidecar.monitor.health_monitor import HealthMonitor
from egress_sidecar.monitor.history import HealthHistory
from egress_sidecar.monitor.probes import NetworkProber
from egress_sidecar.monitor.scoring import (
    CHECK_WEIGHTS,
    DEFAULT_THRESHOLD,
    GATE_CHECKS,
    compute_score,
    identify_issues,
    is_overall_healthy,
)
from egress_sidecar.monitor.types import (
    CheckName,
    ComponentFlags,
    HealthCheckResult,
    HealthSnapshot,
    MonitorState,
)

__all__ = [
    "CHECK_WEIGHTS",
    "CheckName",
    "ComponentFlags",
    "DEFAULT_THRESHOLD",
    "GATE_CHECKS",
    "HealthCheckResult",
    "HealthHistory",
    "HealthMonitor",
    "HealthSnapshot",
    "MonitorState",
    "NetworkProber",
    "compute_score",
    "identify_issues",
    "is_overall_healthy",
]
