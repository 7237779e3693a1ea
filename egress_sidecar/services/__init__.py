"""Services package: orchestration facade and tunnel service configurator."""

from egress_sidecar.services.orchestrator import EgressOrchestrator
from egress_sidecar.services.tunnel_service import (
    OUTBOUND_NAME,
    TunnelServiceConfigurator,
    build_acl,
)

__all__ = [
    "EgressOrchestrator",
    "OUTBOUND_NAME",
    "TunnelServiceConfigurator",
    "build_acl",
]
