"""Middleware package: error hierarchy and request ID."""

from egress_sidecar.middleware.error_handler import (
    AlreadyRunningError,
    ClientConnectionError,
    ConfigurationError,
    EgressError,
    FeatureDisabledError,
    InstallationError,
    OperationInProgressError,
    ProbeTimeoutError,
    ProxyModeError,
    RoutingError,
    register_error_handlers,
)
from egress_sidecar.middleware.request_id import RequestIdMiddleware

__all__ = [
    "AlreadyRunningError",
    "ClientConnectionError",
    "ConfigurationError",
    "EgressError",
    "FeatureDisabledError",
    "InstallationError",
    "OperationInProgressError",
    "ProbeTimeoutError",
    "ProxyModeError",
    "RequestIdMiddleware",
    "RoutingError",
    "register_error_handlers",
]
