"""Orchestration facade for one node's proxy egress.

The orchestrator is the single entry point for callers: it sequences the
controller, router, monitor and tunnel service, converts component errors
into ``OperationResult`` envelopes and serializes mutating operations behind
one per-node lock. A mutating call that finds the lock held fails fast with
``in_progress=True`` instead of queueing behind the running operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from egress_sidecar.client.controller import ProxyClientController
from egress_sidecar.client.types import ClientMode, ClientOptions, ProxyClientState
from egress_sidecar.middleware.error_handler import (
    ConfigurationError,
    EgressError,
    FeatureDisabledError,
    OperationInProgressError,
)
from egress_sidecar.models.requests import (
    EndpointSetupSpec,
    RoutingRequest,
    SetupResult,
    SetupStage,
)
from egress_sidecar.models.responses import OperationResult
from egress_sidecar.monitor.health_monitor import HealthMonitor
from egress_sidecar.monitor.probes import NetworkProber
from egress_sidecar.routing.router import TrafficRouter
from egress_sidecar.routing.types import RoutingRuleSet
from egress_sidecar.services.tunnel_service import TunnelServiceConfigurator

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[OperationResult]]


def _describe(exc: Exception) -> str:
    if isinstance(exc, EgressError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"


class EgressOrchestrator:
    """Facade over the egress components of a single node.

    Parameters
    ----------
    controller:
        Tunnel client controller.
    router:
        Traffic router programming the NAT chain.
    monitor:
        Health monitor; only read from here, except for on-demand checks.
    prober:
        Network probes for the connectivity test.
    tunnel_service:
        Optional configurator for the local tunnel service outbound.
    enabled:
        Feature gate from the host process. When False every mutating
        operation returns ``success=False`` without touching the node.
    check_timeout_seconds:
        Per-probe timeout for the connectivity test.
    """

    def __init__(
        self,
        *,
        controller: ProxyClientController,
        router: TrafficRouter,
        monitor: HealthMonitor,
        prober: NetworkProber,
        tunnel_service: TunnelServiceConfigurator | None = None,
        enabled: bool = True,
        check_timeout_seconds: float = 10.0,
    ) -> None:
        self._controller = controller
        self._router = router
        self._monitor = monitor
        self._prober = prober
        self._tunnel_service = tunnel_service
        self._enabled = enabled
        self._check_timeout = check_timeout_seconds

        self._lock = asyncio.Lock()
        self._current_operation: str | None = None
        self._last_routing: RoutingRequest | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def current_operation(self) -> str | None:
        return self._current_operation

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    async def _exclusive(self, operation: str, action: Action) -> OperationResult:
        """Run ``action`` under the node lock, mapping errors to a failed result."""
        if not self._enabled:
            logger.info("Rejected %s: feature disabled", operation)
            return OperationResult(success=False, message=FeatureDisabledError.message)

        if self._lock.locked():
            logger.info(
                "Rejected %s: %s already in progress", operation, self._current_operation
            )
            return OperationResult(
                success=False,
                in_progress=True,
                message=(
                    f"{OperationInProgressError.message} ({self._current_operation})"
                ),
            )

        async with self._lock:
            self._current_operation = operation
            started = time.monotonic()
            try:
                return await action()
            except EgressError as exc:
                logger.error(
                    "Egress operation %s failed: %s",
                    operation,
                    exc.message,
                    extra={"stage": operation, "error_reason": exc.message},
                )
                data = {k: str(v) for k, v in exc.details.items()} if exc.details else None
                return OperationResult(success=False, message=exc.message, data=data)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Egress operation %s failed unexpectedly",
                    operation,
                    extra={"stage": operation, "error_reason": _describe(exc)},
                )
                return OperationResult(success=False, message=_describe(exc))
            finally:
                self._current_operation = None
                logger.debug(
                    "Egress operation %s finished",
                    operation,
                    extra={
                        "stage": operation,
                        "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    },
                )

    # ------------------------------------------------------------------
    # Full endpoint setup / teardown
    # ------------------------------------------------------------------

    async def setup_endpoint(self, spec: EndpointSetupSpec) -> OperationResult:
        """Bring the node's egress up stage by stage; the first failure stops it.

        Only firewall state is rolled back on failure. A working client
        connection is left as it is.
        """
        return await self._exclusive("setup", lambda: self._setup(spec))

    async def _setup(self, spec: EndpointSetupSpec) -> OperationResult:
        result = SetupResult()
        if not spec.proxy_enabled:
            return OperationResult(
                success=True,
                message="Proxy egress not requested for this endpoint",
                data=result.to_dict(),
            )

        routing = RoutingRequest(
            interface_name=spec.upstream_interface,
            bypass_cidrs=spec.bypass_cidrs,
            redirect_ports=spec.redirect_ports,
            proxy_port=spec.proxy_port,
            masquerade=spec.enable_masquerading,
        )

        stages: list[tuple[SetupStage, Callable[[], Awaitable[object]]]] = [
            (SetupStage.INSTALL, self._controller.ensure_installed),
            (SetupStage.CONFIGURE, lambda: self._controller.configure(spec.client_options())),
        ]
        if spec.auto_connect:
            stages.append((SetupStage.CONNECT, self._controller.connect))
        if spec.enable_proxy_mode:
            stages.append(
                (SetupStage.PROXY_MODE, lambda: self._controller.enable_proxy_mode(spec.proxy_port))
            )
        if spec.setup_traffic_routing:
            stages.append((SetupStage.ROUTING, lambda: self._apply_routing(routing)))
        if spec.configure_tunnel_service:
            stages.append(
                (
                    SetupStage.TUNNEL_SERVICE,
                    lambda: self._attach_tunnel_service(
                        spec.proxy_port,
                        spec.tunnel_listen_port,
                        spec.bandwidth_up_mbps,
                        spec.bandwidth_down_mbps,
                    ),
                )
            )

        for stage, run in stages:
            logger.info("Endpoint setup: %s", stage.value, extra={"stage": stage.value})
            try:
                await run()
            except Exception as exc:  # noqa: BLE001
                reason = _describe(exc)
                result.failed_stage = stage
                result.error = reason
                logger.error(
                    "Endpoint setup failed at %s: %s",
                    stage.value,
                    reason,
                    extra={"stage": stage.value, "error_reason": reason},
                    exc_info=not isinstance(exc, EgressError),
                )
                if stage == SetupStage.ROUTING:
                    # The router already removed its partial chain.
                    result.rolled_back = True
                elif SetupStage.ROUTING in result.completed_stages:
                    result.rolled_back = await self._rollback_routing()
                return OperationResult(
                    success=False,
                    message=f"Endpoint setup failed at stage '{stage.value}': {reason}",
                    data=result.to_dict(),
                )
            result.completed_stages.append(stage)

        status = await self._controller.status()
        return OperationResult(
            success=True,
            message="Endpoint setup complete",
            data={**result.to_dict(), "client": status.to_dict()},
        )

    async def _rollback_routing(self) -> bool:
        try:
            await self._router.disable_routing()
        except Exception as exc:  # noqa: BLE001
            logger.error("Routing rollback failed: %s", _describe(exc))
            return False
        self._last_routing = None
        return True

    async def teardown_endpoint(self, disconnect: bool = False) -> OperationResult:
        """Remove routing, the tunnel service outbound and proxy mode.

        Every step runs even when an earlier one fails; failures are listed
        in the result.
        """
        return await self._exclusive("teardown", lambda: self._teardown(disconnect))

    async def _teardown(self, disconnect: bool) -> OperationResult:
        steps: list[tuple[str, Callable[[], Awaitable[object]]]] = [
            ("routing", self._clear_routing),
        ]
        if self._tunnel_service is not None:
            steps.append(("tunnel_service", self._tunnel_service.detach_outbound))
        steps.append(("proxy_mode", self._controller.disable_proxy_mode))
        if disconnect:
            steps.append(("disconnect", self._controller.disconnect))

        completed: list[str] = []
        errors: dict[str, str] = {}
        for name, run in steps:
            try:
                await run()
            except Exception as exc:  # noqa: BLE001
                reason = _describe(exc)
                logger.error(
                    "Endpoint teardown step %s failed: %s",
                    name,
                    reason,
                    extra={"stage": name, "error_reason": reason},
                    exc_info=not isinstance(exc, EgressError),
                )
                errors[name] = reason
                continue
            completed.append(name)

        data = {"completed_steps": completed, "errors": errors}
        if errors:
            return OperationResult(
                success=False,
                message=f"Endpoint teardown incomplete: {', '.join(errors)} failed",
                data=data,
            )
        return OperationResult(success=True, message="Endpoint teardown complete", data=data)

    # ------------------------------------------------------------------
    # Single-step operations
    # ------------------------------------------------------------------

    async def install_client(self) -> OperationResult:
        async def action() -> OperationResult:
            await self._controller.ensure_installed()
            return OperationResult(
                success=True,
                message="Tunnel client installed",
                data={"state": self._controller.state.value},
            )

        return await self._exclusive("install", action)

    async def configure(self, options: ClientOptions) -> OperationResult:
        async def action() -> OperationResult:
            await self._controller.configure(options)
            return OperationResult(
                success=True,
                message="Tunnel client configured",
                data={"state": self._controller.state.value, "proxy_port": options.proxy_port},
            )

        return await self._exclusive("configure", action)

    async def connect(self) -> OperationResult:
        async def action() -> OperationResult:
            status = await self._controller.connect()
            return OperationResult(
                success=True, message="Tunnel client connected", data=status.to_dict()
            )

        return await self._exclusive("connect", action)

    async def enable_proxy_mode(self, port: int | None = None) -> OperationResult:
        async def action() -> OperationResult:
            await self._controller.enable_proxy_mode(port)
            return OperationResult(
                success=True,
                message=f"Proxy mode enabled on port {self._controller.proxy_port}",
                data={
                    "state": self._controller.state.value,
                    "proxy_port": self._controller.proxy_port,
                },
            )

        return await self._exclusive("proxy_mode", action)

    async def enable_routing(self, request: RoutingRequest) -> OperationResult:
        async def action() -> OperationResult:
            ruleset = await self._apply_routing(request)
            return OperationResult(
                success=True, message="Traffic routing enabled", data=ruleset.to_dict()
            )

        return await self._exclusive("routing", action)

    async def disable_routing(self) -> OperationResult:
        async def action() -> OperationResult:
            await self._clear_routing()
            return OperationResult(success=True, message="Traffic routing disabled")

        return await self._exclusive("routing", action)

    async def restart(self) -> OperationResult:
        """Clear routing, reconnect, then restore proxy mode and the last routing."""

        async def action() -> OperationResult:
            routing = self._last_routing
            proxy_mode = self._controller.state == ProxyClientState.PROXY_MODE_ENABLED

            await self._clear_routing()
            await self._controller.disconnect()
            await self._controller.connect()
            if proxy_mode:
                await self._controller.enable_proxy_mode(self._controller.proxy_port)
            if routing is not None:
                await self._apply_routing(routing)

            status = await self._controller.status()
            return OperationResult(
                success=True,
                message="Proxy egress restarted",
                data={
                    "client": status.to_dict(),
                    "routing_restored": routing is not None,
                },
            )

        return await self._exclusive("restart", action)

    async def _apply_routing(self, request: RoutingRequest) -> RoutingRuleSet:
        ruleset = await self._router.enable_routing(
            request.interface_name,
            request.bypass_cidrs,
            request.redirect_ports,
            request.proxy_port or self._controller.proxy_port,
            request.masquerade,
        )
        self._last_routing = request
        return ruleset

    async def _clear_routing(self) -> None:
        await self._router.disable_routing()
        self._last_routing = None

    async def _attach_tunnel_service(
        self,
        proxy_port: int,
        listen_port: int | None,
        bandwidth_up_mbps: int | None,
        bandwidth_down_mbps: int | None,
    ) -> None:
        if self._tunnel_service is None:
            raise ConfigurationError("No tunnel service is configured on this node")
        await self._tunnel_service.attach_outbound(
            proxy_port, listen_port, bandwidth_up_mbps, bandwidth_down_mbps
        )

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    async def get_status(self) -> OperationResult:
        """Client, routing and last health snapshot, without running checks."""
        client = await self._controller.status()
        routing = await self._router.get_routing_status()
        snapshot = self._monitor.get_current_status()

        degraded = bool(routing.get("active")) and not client.connected
        if degraded:
            message = "Routing is active but the tunnel client is not connected"
            logger.warning(message, extra={"client_state": client.state.value})
        elif not self._enabled:
            message = "Egress proxy is disabled on this node"
        else:
            message = f"Tunnel client {client.state.value}"

        return OperationResult(
            success=True,
            message=message,
            degraded=degraded,
            in_progress=self._lock.locked(),
            data={
                "enabled": self._enabled,
                "current_operation": self._current_operation,
                "client": client.to_dict(),
                "routing": routing,
                "health": snapshot.to_dict() if snapshot else None,
                "monitor": self._monitor.get_stats(),
            },
        )

    async def run_health_check(self) -> OperationResult:
        snapshot = await self._monitor.run_health_check()
        return OperationResult(
            success=snapshot.overall_healthy,
            message=snapshot.message,
            data=snapshot.to_dict(),
        )

    def get_historical_data(self, duration_seconds: float) -> OperationResult:
        snapshots = self._monitor.get_historical_data(duration_seconds)
        return OperationResult(
            success=True,
            message=f"{len(snapshots)} snapshots in the last {duration_seconds:.0f}s",
            data={
                "duration_seconds": duration_seconds,
                "count": len(snapshots),
                "snapshots": [snapshot.to_dict() for snapshot in snapshots],
            },
        )

    async def test_connectivity(self) -> OperationResult:
        """Ad-hoc probe battery; changes nothing on the node."""
        tests: dict[str, dict] = {}

        def record(name: str, passed: bool, message: str) -> None:
            tests[name] = {"passed": passed, "message": message}

        status = await self._controller.observe()
        record(
            "client_connected",
            status.connected,
            f"Tunnel client {status.state.value}",
        )
        record(
            "proxy_mode",
            status.mode == ClientMode.PROXY,
            f"Client mode {status.mode.value}",
        )

        port = status.proxy_port or self._controller.proxy_port
        record("proxy_port", *await self._bounded(self._prober.check_socks_port(port)))
        record("internet_via_proxy", *await self._bounded(self._prober.check_internet(port)))
        record("dns", *await self._bounded(self._prober.check_dns()))

        if self._router.ruleset is not None:
            active = await self._router.is_routing_active()
            record(
                "routing_active",
                active,
                "Routing chain active" if active else "Routing chain expected but missing",
            )

        passed = sum(1 for test in tests.values() if test["passed"])
        success = passed == len(tests)
        return OperationResult(
            success=success,
            message=(
                "All connectivity tests passed"
                if success
                else f"{len(tests) - passed} of {len(tests)} connectivity tests failed"
            ),
            data={"tests": tests, "passed": passed, "total": len(tests)},
        )

    async def _bounded(self, probe: Awaitable[tuple[bool, str]]) -> tuple[bool, str]:
        try:
            return await asyncio.wait_for(probe, timeout=self._check_timeout)
        except asyncio.TimeoutError:
            return False, f"Timed out after {self._check_timeout:.0f}s"
