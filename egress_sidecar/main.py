"""FastAPI application entry point with lifespan management.

Startup: load settings, configure JSON logging, build the controller,
router, health monitor, tunnel service configurator and orchestrator, start
the monitor loop and mount the routers.
Shutdown: stop the monitor loop within the graceful shutdown budget. Client
connection and firewall rules are left as they are, so a sidecar restart
does not interrupt egress.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from egress_sidecar.client.backend import WarpCliBackend
from egress_sidecar.client.controller import ProxyClientController
from egress_sidecar.client.types import ClientOptions
from egress_sidecar.config.settings import EgressSettings
from egress_sidecar.logging_config import configure_logging
from egress_sidecar.middleware.error_handler import register_error_handlers
from egress_sidecar.middleware.request_id import RequestIdMiddleware
from egress_sidecar.monitor.health_monitor import HealthMonitor
from egress_sidecar.monitor.probes import NetworkProber
from egress_sidecar.routers.egress import create_egress_router
from egress_sidecar.routers.health import create_health_router
from egress_sidecar.routing.firewall import IptablesBackend
from egress_sidecar.routing.router import TrafficRouter
from egress_sidecar.services.orchestrator import EgressOrchestrator
from egress_sidecar.services.tunnel_service import TunnelServiceConfigurator
from egress_sidecar.system.commands import CommandRunner

logger = logging.getLogger(__name__)

# Shared state for the application, populated during lifespan startup
_state: dict = {}


def build_components(settings: EgressSettings) -> dict:
    """Wire the egress components from settings. Nothing touches the host yet."""
    runner = CommandRunner(default_timeout=settings.command_timeout_seconds)

    controller = ProxyClientController(
        WarpCliBackend(
            runner,
            binary=settings.client_binary,
            install_timeout=settings.install_timeout_seconds,
        ),
        options=ClientOptions(
            proxy_port=settings.proxy_port,
            auto_connect=settings.auto_connect,
            client_type=settings.client_type,
            license_key=settings.license_key,
            organization=settings.organization,
        ),
        connect_retries=settings.connect_retries,
        connect_backoff_seconds=settings.connect_backoff_seconds,
    )

    router = TrafficRouter(
        IptablesBackend(runner),
        client_state=controller.refresh_state,
        chain_name=settings.routing_chain_name,
    )

    prober = NetworkProber(
        probe_targets=settings.probe_targets,
        dns_names=settings.dns_probe_names,
        request_timeout=settings.check_timeout_seconds,
    )

    monitor = HealthMonitor(
        controller,
        prober,
        interval_seconds=settings.monitor_interval_seconds,
        check_timeout_seconds=settings.check_timeout_seconds,
        threshold=settings.health_threshold,
        retention_seconds=settings.history_retention_seconds,
        max_entries=settings.history_max_entries,
    )

    tunnel_service = TunnelServiceConfigurator(
        runner,
        settings.tunnel_service_config_path,
        unit=settings.tunnel_service_unit,
    )

    orchestrator = EgressOrchestrator(
        controller=controller,
        router=router,
        monitor=monitor,
        prober=prober,
        tunnel_service=tunnel_service,
        enabled=settings.enabled,
        check_timeout_seconds=settings.check_timeout_seconds,
    )

    return {
        "settings": settings,
        "controller": controller,
        "router": router,
        "monitor": monitor,
        "tunnel_service": tunnel_service,
        "orchestrator": orchestrator,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings: EgressSettings = app.state.settings

    configure_logging(settings.log_level)
    logger.info("Starting egress sidecar on port %d", settings.port)

    components = build_components(settings)
    monitor: HealthMonitor = components["monitor"]
    orchestrator: EgressOrchestrator = components["orchestrator"]

    if settings.enabled and settings.monitor_enabled:
        monitor.start()
    elif not settings.enabled:
        logger.info("Egress proxy disabled on this node; monitor not started")

    # Mount routers
    app.include_router(create_health_router(orchestrator=orchestrator, monitor=monitor))
    app.include_router(create_egress_router(orchestrator=orchestrator))

    _state.update(components)

    logger.info("Egress sidecar started successfully")

    yield

    # --- Shutdown ---
    logger.info("Shutting down egress sidecar…")

    try:
        await asyncio.wait_for(monitor.stop(), timeout=settings.graceful_shutdown_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Health monitor did not stop within %ds", settings.graceful_shutdown_seconds
        )

    _state.clear()
    logger.info("Egress sidecar shut down")


def create_app(settings: EgressSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Settings are loaded eagerly so invalid ``EGRESS_*`` values fail at
    import time rather than on the first request.
    """
    settings = settings or EgressSettings()

    app = FastAPI(
        title="Egress Proxy Sidecar",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Register error handlers
    register_error_handlers(app)

    app.add_middleware(RequestIdMiddleware)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings: EgressSettings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
