"""Pydantic Settings for the egress sidecar.

All environment variables use the EGRESS_ prefix.
Example: EGRESS_PORT=8002, EGRESS_PROXY_PORT=40000, EGRESS_ENABLED=false
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class EgressSettings(BaseSettings):
    """Egress sidecar configuration validated from environment variables."""

    # Service
    host: str = "0.0.0.0"
    port: int = 8002
    log_level: str = "INFO"
    enabled: bool = True  # Host-level switch for the whole feature

    # Tunnel client options (passed to the controller as ClientOptions)
    proxy_port: int = Field(default=1080, ge=1, le=65535)
    auto_connect: bool = True
    client_type: str = "local"  # local, docker
    license_key: str | None = None
    organization: str | None = None
    client_binary: str = "warp-cli"

    # External command budgets
    command_timeout_seconds: float = Field(default=15.0, gt=0)
    install_timeout_seconds: float = Field(default=600.0, gt=0)
    connect_retries: int = Field(default=3, ge=1)
    connect_backoff_seconds: float = Field(default=1.0, ge=0)

    # Health monitor
    monitor_enabled: bool = True
    monitor_interval_seconds: float = Field(default=30.0, gt=0)
    check_timeout_seconds: float = Field(default=10.0, gt=0)
    health_threshold: int = Field(default=70, ge=0, le=100)
    history_retention_seconds: int = Field(default=86400, ge=1)  # 24h
    history_max_entries: int = Field(default=2880, ge=1)  # 24h at 30s
    probe_targets: list[str] = [
        "https://1.1.1.1",
        "https://cloudflare.com",
        "https://www.google.com",
    ]
    dns_probe_names: list[str] = ["cloudflare.com", "google.com"]

    # Traffic routing
    routing_chain_name: str = "EGRESS-PROXY"
    redirect_ports: list[int] = [80, 443]

    # Local tunnel-terminating service (Hysteria2)
    tunnel_service_config_path: str = "/etc/hysteria/config.yaml"
    tunnel_service_unit: str | None = "hysteria-server.service"

    graceful_shutdown_seconds: int = Field(default=30, ge=0)

    model_config = {"env_prefix": "EGRESS_"}
