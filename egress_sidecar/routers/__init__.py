"""HTTP routers."""

from egress_sidecar.routers.egress import create_egress_router
from egress_sidecar.routers.health import create_health_router

__all__ = ["create_egress_router", "create_health_router"]
