"""Tunnel client data models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class ProxyClientState(str, Enum):
    """Lifecycle state of the tunnel client, as last observed."""

    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    REGISTERED = "registered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PROXY_MODE_ENABLED = "proxy_mode_enabled"
    FAILED = "failed"


# States in which the tunnel is up and traffic may be routed into it.
CONNECTED_STATES = frozenset({ProxyClientState.CONNECTED, ProxyClientState.PROXY_MODE_ENABLED})


class ClientMode(str, Enum):
    """Operating mode reported by the client."""

    PROXY = "proxy"
    TUNNEL = "warp"
    UNKNOWN = "unknown"


class ClientOptions(BaseModel):
    """Settings applied to the tunnel client by ``configure``."""

    proxy_port: int = Field(default=1080, ge=1, le=65535)
    auto_connect: bool = True
    client_type: str = "local"  # local, docker
    license_key: str | None = None
    organization: str | None = None


@dataclass
class ClientProbe:
    """Raw facts read from the client by one backend probe."""

    installed: bool
    registered: bool = False
    connected: bool = False
    mode: ClientMode = ClientMode.UNKNOWN
    proxy_port: int | None = None


@dataclass
class ClientStatus:
    """Result of ``ProxyClientController.status()``."""

    state: ProxyClientState
    installed: bool = False
    registered: bool = False
    connected: bool = False
    mode: ClientMode = ClientMode.UNKNOWN
    proxy_port: int | None = None
    ip_address: str | None = None
    location: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "installed": self.installed,
            "registered": self.registered,
            "connected": self.connected,
            "mode": self.mode.value,
            "proxy_port": self.proxy_port,
            "ip_address": self.ip_address,
            "location": self.location,
            "reason": self.reason,
        }
