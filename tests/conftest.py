"""Shared fixtures, in-memory fakes and hypothesis strategies for the egress test suite."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from hypothesis import strategies as st

from egress_sidecar.client.backend import TunnelClientBackend
from egress_sidecar.client.controller import ProxyClientController
from egress_sidecar.client.types import ClientMode, ClientOptions, ClientProbe
from egress_sidecar.config.settings import EgressSettings
from egress_sidecar.middleware.error_handler import (
    ClientConnectionError,
    InstallationError,
    RoutingError,
)
from egress_sidecar.monitor.health_monitor import HealthMonitor
from egress_sidecar.routing.firewall import FirewallBackend
from egress_sidecar.routing.router import TrafficRouter
from egress_sidecar.services.orchestrator import EgressOrchestrator


# ---------------------------------------------------------------------------
# Keep EGRESS_* variables from the developer's shell out of the tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clear_egress_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("EGRESS_"):
            monkeypatch.delenv(key)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTunnelClient(TunnelClientBackend):
    """In-memory tunnel client.

    Failure injection: ``install_fails``, ``connect_fails`` (every attempt),
    ``connect_failures`` (number of initial attempts that fail),
    ``probe_error`` and ``stay_disconnected`` (connect accepted but the
    client never reports connected).
    """

    name = "fake-client"

    def __init__(self, *, installed: bool = False) -> None:
        self.installed = installed
        self.registered = False
        self.connected = False
        self.mode = ClientMode.TUNNEL
        self.proxy_port: int | None = None
        self.license_key: str | None = None
        self.organization: str | None = None

        self.install_fails = False
        self.connect_fails = False
        self.connect_failures = 0
        self.stay_disconnected = False
        self.probe_error: Exception | None = None
        self.connect_delay = 0.0

        self.calls: list[str] = []

    async def is_installed(self) -> bool:
        return self.installed

    async def install(self, os_family: str) -> None:
        self.calls.append(f"install:{os_family}")
        if self.install_fails:
            raise InstallationError("simulated installer failure")
        self.installed = True

    async def configure(self, options: ClientOptions) -> None:
        self.calls.append("configure")
        self.proxy_port = options.proxy_port

    async def register(self, organization: str | None = None) -> None:
        self.calls.append("register")
        self.registered = True
        self.organization = organization

    async def set_license(self, license_key: str) -> None:
        self.calls.append("set_license")
        self.license_key = license_key

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_fails:
            raise ClientConnectionError("simulated: Unable to connect")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ClientConnectionError("simulated: transient connect failure")
        if not self.stay_disconnected:
            self.connected = True

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    async def enable_proxy_mode(self, port: int) -> None:
        self.calls.append(f"proxy_mode:{port}")
        self.mode = ClientMode.PROXY
        self.proxy_port = port

    async def disable_proxy_mode(self) -> None:
        self.calls.append("tunnel_mode")
        self.mode = ClientMode.TUNNEL

    async def probe(self) -> ClientProbe:
        if self.probe_error is not None:
            raise self.probe_error
        if not self.installed:
            return ClientProbe(installed=False)
        return ClientProbe(
            installed=True,
            registered=self.registered,
            connected=self.connected,
            mode=self.mode,
            proxy_port=self.proxy_port if self.mode == ClientMode.PROXY else None,
        )

    async def exit_info(self, proxy_port: int) -> dict[str, str]:
        return {"ip": "203.0.113.7", "loc": "NL", "warp": "on"}


class FakeFirewall(FirewallBackend):
    """In-memory nat table.

    ``fail_on`` is a predicate over rule arguments; a matching
    ``append_rule`` raises ``RoutingError`` as iptables would.
    """

    def __init__(self) -> None:
        self.chains: dict[tuple[str, str], list[str]] = {}
        self.hooks: dict[tuple[str, str], list[str]] = {}
        self.ip_forwarding = False
        self.fail_on = None
        self.append_count = 0

    async def chain_exists(self, table: str, chain: str) -> bool:
        return (table, chain) in self.chains

    async def create_chain(self, table: str, chain: str) -> None:
        if (table, chain) in self.chains:
            raise RoutingError(f"Chain already exists: {chain}")
        self.chains[(table, chain)] = []

    async def flush_chain(self, table: str, chain: str) -> None:
        if (table, chain) not in self.chains:
            raise RoutingError(f"No chain by that name: {chain}")
        self.chains[(table, chain)] = []

    async def delete_chain(self, table: str, chain: str) -> None:
        if (table, chain) not in self.chains:
            raise RoutingError(f"No chain by that name: {chain}")
        if any(chain in targets for (tbl, _), targets in self.hooks.items() if tbl == table):
            raise RoutingError(f"Chain {chain} is still referenced")
        del self.chains[(table, chain)]

    async def append_rule(self, table: str, chain: str, args: list[str]) -> None:
        if (table, chain) not in self.chains:
            raise RoutingError(f"No chain by that name: {chain}")
        if self.fail_on is not None and self.fail_on(args):
            raise RoutingError(f"simulated failure for {' '.join(args)}")
        self.chains[(table, chain)].append(" ".join(args))
        self.append_count += 1

    async def list_rules(self, table: str, chain: str) -> list[str]:
        return list(self.chains.get((table, chain), []))

    async def hook_exists(self, table: str, parent: str, chain: str) -> bool:
        return chain in self.hooks.get((table, parent), [])

    async def add_hook(self, table: str, parent: str, chain: str) -> None:
        self.hooks.setdefault((table, parent), []).append(chain)

    async def remove_hook(self, table: str, parent: str, chain: str) -> None:
        targets = self.hooks.get((table, parent), [])
        if chain not in targets:
            raise RoutingError(f"Bad rule: no hook {parent} -> {chain}")
        targets.remove(chain)

    async def enable_ip_forwarding(self) -> None:
        self.ip_forwarding = True

    def rule_count(self) -> int:
        return sum(len(rules) for rules in self.chains.values())

    def hook_count(self, parent: str, chain: str, table: str = "nat") -> int:
        return self.hooks.get((table, parent), []).count(chain)


class FakeProber:
    """Network prober with fixed answers and an optional delay."""

    def __init__(self, *, socks: bool = True, internet: bool = True, dns: bool = True) -> None:
        self.socks = socks
        self.internet = internet
        self.dns = dns
        self.delay = 0.0

    async def _answer(self, passed: bool, what: str) -> tuple[bool, str]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return passed, f"{what} {'ok' if passed else 'failed'}"

    async def check_socks_port(self, port: int) -> tuple[bool, str]:
        return await self._answer(self.socks, f"socks:{port}")

    async def check_internet(self, port: int) -> tuple[bool, str]:
        return await self._answer(self.internet, "internet")

    async def check_dns(self) -> tuple[bool, str]:
        return await self._answer(self.dns, "dns")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> EgressSettings:
    """Test settings with safe defaults."""
    return EgressSettings(
        monitor_enabled=False,
        connect_backoff_seconds=0,
        check_timeout_seconds=1.0,
        tunnel_service_unit=None,
    )


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def os_release(tmp_path: Path) -> Path:
    path = tmp_path / "os-release"
    path.write_text('NAME="Ubuntu"\nID=ubuntu\nID_LIKE=debian\n', encoding="utf-8")
    return path


@pytest.fixture
def fake_client() -> FakeTunnelClient:
    return FakeTunnelClient()


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_controller(
    backend: TunnelClientBackend,
    os_release_path: Path | str,
    **kwargs: object,
) -> ProxyClientController:
    defaults: dict = {
        "connect_retries": 3,
        "connect_backoff_seconds": 0,
        "connect_wait_seconds": 0,
        "poll_interval_seconds": 0,
        "os_release_path": str(os_release_path),
        "port_checker": lambda port: False,
    }
    defaults.update(kwargs)
    return ProxyClientController(backend, **defaults)


@pytest.fixture
def controller(fake_client: FakeTunnelClient, os_release: Path) -> ProxyClientController:
    return make_controller(fake_client, os_release)


@pytest.fixture
def router(fake_firewall: FakeFirewall, controller: ProxyClientController) -> TrafficRouter:
    return TrafficRouter(fake_firewall, client_state=controller.refresh_state)


@pytest.fixture
def monitor(
    controller: ProxyClientController, fake_prober: FakeProber, clock: FakeClock
) -> HealthMonitor:
    return HealthMonitor(
        controller,
        fake_prober,  # type: ignore[arg-type]
        interval_seconds=0.01,
        check_timeout_seconds=0.5,
        retention_seconds=3600,
        max_entries=50,
        clock=clock,
    )


@pytest.fixture
def orchestrator(
    controller: ProxyClientController,
    router: TrafficRouter,
    monitor: HealthMonitor,
    fake_prober: FakeProber,
) -> EgressOrchestrator:
    return EgressOrchestrator(
        controller=controller,
        router=router,
        monitor=monitor,
        prober=fake_prober,  # type: ignore[arg-type]
        check_timeout_seconds=0.5,
    )


# ---------------------------------------------------------------------------
# Hypothesis strategies (reusable across property tests)
# ---------------------------------------------------------------------------

# Pass/fail outcome for each of the five health checks
check_outcomes = st.fixed_dictionaries(
    {
        "installation": st.booleans(),
        "connection": st.booleans(),
        "proxy": st.booleans(),
        "internet": st.booleans(),
        "dns": st.booleans(),
    }
)

# Public IPv4 networks usable as extra bypass CIDRs
public_cidrs = st.builds(
    lambda a, b, prefix: f"{a}.{b}.0.0/{prefix}",
    st.sampled_from([8, 23, 45, 93, 151, 185]),
    st.integers(min_value=0, max_value=255),
    st.integers(min_value=16, max_value=24),
)

redirect_port_lists = st.lists(
    st.integers(min_value=1, max_value=65535), min_size=1, max_size=5, unique=True
)

proxy_ports = st.integers(min_value=1024, max_value=65535)
