"""Models package: request bodies, setup state and the response envelope."""

from egress_sidecar.models.requests import (
    EndpointSetupSpec,
    ProxyModeRequest,
    RoutingRequest,
    SetupResult,
    SetupStage,
    TeardownRequest,
)
from egress_sidecar.models.responses import OperationResult

__all__ = [
    "EndpointSetupSpec",
    "OperationResult",
    "ProxyModeRequest",
    "RoutingRequest",
    "SetupResult",
    "SetupStage",
    "TeardownRequest",
]
