"""Health and readiness endpoints for the sidecar process itself.

- GET /health : process status plus monitor stats
- GET /readiness : 200 only when the feature is enabled and the last
  health snapshot (if any) is healthy
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response

from egress_sidecar.models.responses import OperationResult


def create_health_router(
    *,
    orchestrator: Any = None,
    monitor: Any = None,
) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/health")
    async def health() -> dict:
        """Sidecar liveness with monitor statistics."""
        monitor_stats = monitor.get_stats() if monitor else {}

        return OperationResult(
            success=True,
            message="healthy",
            data={
                "status": "healthy",
                "enabled": orchestrator.enabled if orchestrator else False,
                "monitor": monitor_stats,
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness probe: 503 while disabled or while the egress path is unhealthy."""
        enabled = orchestrator.enabled if orchestrator else False
        snapshot = monitor.get_current_status() if monitor else None
        egress_healthy = snapshot.overall_healthy if snapshot else None

        is_ready = enabled and egress_healthy is not False
        if not is_ready:
            response.status_code = 503

        return OperationResult(
            success=is_ready,
            message="ready" if is_ready else "Service not ready",
            data={
                "ready": is_ready,
                "enabled": enabled,
                "egress_healthy": egress_healthy,
                "score": snapshot.score if snapshot else None,
            },
        ).model_dump()

    return health_router
