"""Egress proxy endpoints.

- POST   /api/v1/egress/install            : install the tunnel client
- POST   /api/v1/egress/configure          : write client options
- POST   /api/v1/egress/connect            : register and connect
- POST   /api/v1/egress/proxy-mode         : switch to local SOCKS proxy mode
- POST   /api/v1/egress/routing            : program the NAT redirect chain
- DELETE /api/v1/egress/routing            : remove the NAT chain
- POST   /api/v1/egress/setup              : full endpoint setup
- POST   /api/v1/egress/teardown           : full endpoint teardown
- POST   /api/v1/egress/restart            : reconnect and restore
- GET    /api/v1/egress/status             : client, routing and last health
- POST   /api/v1/egress/health-check       : run one health cycle now
- POST   /api/v1/egress/test-connectivity  : ad-hoc probe battery
- GET    /api/v1/egress/history            : health snapshots in a window

A result with ``in_progress`` set is returned with status 409.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Response

from egress_sidecar.client.types import ClientOptions
from egress_sidecar.models.requests import (
    EndpointSetupSpec,
    ProxyModeRequest,
    RoutingRequest,
    TeardownRequest,
)
from egress_sidecar.models.responses import OperationResult


def _respond(result: OperationResult, response: Response) -> dict:
    if result.in_progress:
        response.status_code = 409
    return result.model_dump()


def create_egress_router(*, orchestrator: Any = None) -> APIRouter:
    """Factory that creates the egress router with injected dependencies."""

    egress_router = APIRouter(prefix="/api/v1/egress", tags=["egress"])

    @egress_router.post("/install")
    async def install(response: Response) -> dict:
        return _respond(await orchestrator.install_client(), response)

    @egress_router.post("/configure")
    async def configure(body: ClientOptions, response: Response) -> dict:
        return _respond(await orchestrator.configure(body), response)

    @egress_router.post("/connect")
    async def connect(response: Response) -> dict:
        return _respond(await orchestrator.connect(), response)

    @egress_router.post("/proxy-mode")
    async def proxy_mode(body: ProxyModeRequest, response: Response) -> dict:
        return _respond(await orchestrator.enable_proxy_mode(body.port), response)

    @egress_router.post("/routing")
    async def enable_routing(body: RoutingRequest, response: Response) -> dict:
        return _respond(await orchestrator.enable_routing(body), response)

    @egress_router.delete("/routing")
    async def disable_routing(response: Response) -> dict:
        return _respond(await orchestrator.disable_routing(), response)

    @egress_router.post("/setup")
    async def setup(body: EndpointSetupSpec, response: Response) -> dict:
        """Install, configure, connect and route in one call."""
        return _respond(await orchestrator.setup_endpoint(body), response)

    @egress_router.post("/teardown")
    async def teardown(body: TeardownRequest, response: Response) -> dict:
        return _respond(await orchestrator.teardown_endpoint(body.disconnect), response)

    @egress_router.post("/restart")
    async def restart(response: Response) -> dict:
        return _respond(await orchestrator.restart(), response)

    @egress_router.get("/status")
    async def status() -> dict:
        """Current state without running health checks."""
        return (await orchestrator.get_status()).model_dump()

    @egress_router.post("/health-check")
    async def health_check() -> dict:
        return (await orchestrator.run_health_check()).model_dump()

    @egress_router.post("/test-connectivity")
    async def test_connectivity() -> dict:
        return (await orchestrator.test_connectivity()).model_dump()

    @egress_router.get("/history")
    async def history(
        duration_seconds: int = Query(default=3600, ge=0, le=7 * 86400),
    ) -> dict:
        """Health snapshots from the trailing window, oldest first."""
        return orchestrator.get_historical_data(duration_seconds).model_dump()

    return egress_router
