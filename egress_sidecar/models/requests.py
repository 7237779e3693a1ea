"""Pydantic request models and setup result state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from egress_sidecar.client.types import ClientOptions


def _validate_ports(ports: list[int]) -> list[int]:
    for port in ports:
        if not 1 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
    return ports


class EndpointSetupSpec(BaseModel):
    """Everything needed to bring one node's proxy egress up in one call."""

    proxy_enabled: bool = True
    proxy_port: int = Field(default=1080, ge=1, le=65535)
    auto_connect: bool = True
    enable_proxy_mode: bool = True
    client_type: str = "local"
    license_key: str | None = None
    organization: str | None = None

    upstream_interface: str | None = None
    redirect_ports: list[int] = Field(default_factory=lambda: [80, 443])
    bypass_cidrs: list[str] = Field(default_factory=list)
    setup_traffic_routing: bool = False
    enable_masquerading: bool = False

    configure_tunnel_service: bool = False
    tunnel_listen_port: int = Field(default=443, ge=1, le=65535)
    bandwidth_up_mbps: int | None = Field(default=None, ge=1)
    bandwidth_down_mbps: int | None = Field(default=None, ge=1)

    _check_ports = field_validator("redirect_ports")(_validate_ports)

    def client_options(self) -> ClientOptions:
        return ClientOptions(
            proxy_port=self.proxy_port,
            auto_connect=self.auto_connect,
            client_type=self.client_type,
            license_key=self.license_key,
            organization=self.organization,
        )


class ProxyModeRequest(BaseModel):
    port: int | None = Field(default=None, ge=1, le=65535)


class RoutingRequest(BaseModel):
    interface_name: str | None = None
    bypass_cidrs: list[str] = Field(default_factory=list)
    redirect_ports: list[int] = Field(default_factory=lambda: [80, 443], min_length=1)
    proxy_port: int | None = Field(default=None, ge=1, le=65535)
    masquerade: bool = False

    _check_ports = field_validator("redirect_ports")(_validate_ports)


class TeardownRequest(BaseModel):
    disconnect: bool = False


class SetupStage(str, Enum):
    """Stages of endpoint setup, in execution order."""

    INSTALL = "install"
    CONFIGURE = "configure"
    CONNECT = "connect"
    PROXY_MODE = "proxy_mode"
    ROUTING = "routing"
    TUNNEL_SERVICE = "tunnel_service"


@dataclass
class SetupResult:
    """Outcome of an endpoint setup attempt."""

    completed_stages: list[SetupStage] = field(default_factory=list)
    failed_stage: SetupStage | None = None
    error: str | None = None
    rolled_back: bool = False

    @property
    def success(self) -> bool:
        return self.failed_stage is None

    def to_dict(self) -> dict:
        return {
            "completed_stages": [stage.value for stage in self.completed_stages],
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "rolled_back": self.rolled_back,
        }
