"""Tunnel client package: capability interface, warp-cli backend and controller."""

from egress_sidecar.client.backend import TunnelClientBackend, WarpCliBackend
from egress_sidecar.client.controller import ProxyClientController
from egress_sidecar.client.types import (
    CONNECTED_STATES,
    ClientMode,
    ClientOptions,
    ClientProbe,
    ClientStatus,
    ProxyClientState,
)

__all__ = [
    "CONNECTED_STATES",
    "ClientMode",
    "ClientOptions",
    "ClientProbe",
    "ClientStatus",
    "ProxyClientController",
    "ProxyClientState",
    "TunnelClientBackend",
    "WarpCliBackend",
]
