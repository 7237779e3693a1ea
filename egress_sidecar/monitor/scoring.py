"""Health score computation.

Each failed check subtracts a fixed weight from 100 (floor 0). Installation
and connection are hard gates: without both the node is unhealthy whatever
the score. Proxy, internet and DNS only lower the score.
"""

from __future__ import annotations

from collections.abc import Mapping

from egress_sidecar.monitor.types import CheckName

CHECK_WEIGHTS: dict[str, int] = {
    CheckName.INSTALLATION.value: 40,
    CheckName.CONNECTION.value: 30,
    CheckName.PROXY.value: 15,
    CheckName.INTERNET.value: 10,
    CheckName.DNS.value: 5,
}

GATE_CHECKS: tuple[str, ...] = (CheckName.INSTALLATION.value, CheckName.CONNECTION.value)

DEFAULT_THRESHOLD = 70

HIGH_LATENCY_MS = 500.0
FREQUENT_DISCONNECTIONS = 5


def compute_score(results: Mapping[str, bool]) -> int:
    """Score in [0, 100]. A check missing from ``results`` counts as failed."""
    score = 100
    for name, weight in CHECK_WEIGHTS.items():
        if not results.get(name, False):
            score -= weight
    return max(score, 0)


def is_overall_healthy(
    score: int, results: Mapping[str, bool], threshold: int = DEFAULT_THRESHOLD
) -> bool:
    return score >= threshold and all(results.get(name, False) for name in GATE_CHECKS)


def summarize(score: int, healthy: bool, results: Mapping[str, bool]) -> str:
    """Human-readable one-liner for a snapshot."""
    if healthy:
        failed = [name for name in CHECK_WEIGHTS if not results.get(name, False)]
        if failed:
            return f"Proxy egress healthy with degraded checks: {', '.join(failed)} (score {score})"
        return f"Proxy egress healthy (score {score})"

    gates = [name for name in GATE_CHECKS if not results.get(name, False)]
    if gates:
        return f"Proxy egress unhealthy: {', '.join(gates)} failed (score {score})"
    return f"Proxy egress has issues (score {score})"


def identify_issues(
    results: Mapping[str, bool],
    latency_ms: float | None,
    disconnections: int,
) -> tuple[str, ...]:
    """Operator-facing problems for a snapshot, most severe first."""
    issues: list[str] = []
    if not results.get(CheckName.INSTALLATION.value, False):
        issues.append("Tunnel client not installed")
    elif not results.get(CheckName.CONNECTION.value, False):
        issues.append("Tunnel client not connected")
    if latency_ms is not None and latency_ms > HIGH_LATENCY_MS:
        issues.append(f"High latency ({latency_ms:.0f}ms)")
    if disconnections > FREQUENT_DISCONNECTIONS:
        issues.append(f"Frequent disconnections ({disconnections})")
    return tuple(issues)
