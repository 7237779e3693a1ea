"""Property tests for the traffic router over the in-memory firewall.

Each example builds fresh fakes and drives them with ``asyncio.run``.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from conftest import (
    FakeFirewall,
    FakeTunnelClient,
    make_controller,
    proxy_ports,
    public_cidrs,
    redirect_port_lists,
)
from egress_sidecar.client.types import CONNECTED_STATES
from egress_sidecar.middleware.error_handler import ClientConnectionError, RoutingError
from egress_sidecar.routing.router import TrafficRouter


def _stack(tmp: str, *, connect: bool = True):
    os_release = Path(tmp) / "os-release"
    os_release.write_text("ID=debian\n", encoding="utf-8")
    client = FakeTunnelClient(installed=True)
    controller = make_controller(client, os_release)
    firewall = FakeFirewall()
    router = TrafficRouter(firewall, client_state=controller.refresh_state)

    async def bring_up():
        if connect:
            await controller.ensure_installed()
            await controller.connect()

    asyncio.run(bring_up())
    return controller, firewall, router, client


@settings(max_examples=100, deadline=None)
@given(cidrs=st.lists(public_cidrs, max_size=4), ports=redirect_port_lists, proxy_port=proxy_ports)
def test_enable_is_idempotent(cidrs: list[str], ports: list[int], proxy_port: int):
    with tempfile.TemporaryDirectory() as tmp:
        _, firewall, router, _ = _stack(tmp)

        async def scenario():
            await router.enable_routing("eth0", cidrs, ports, proxy_port)
            rules, hooks = firewall.rule_count(), firewall.hook_count("OUTPUT", router.chain_name)
            await router.enable_routing("eth0", cidrs, ports, proxy_port)
            assert firewall.rule_count() == rules
            assert firewall.hook_count("OUTPUT", router.chain_name) == hooks == 1
            assert await router.is_routing_active()

        asyncio.run(scenario())


@settings(max_examples=100, deadline=None)
@given(ports=redirect_port_lists, proxy_port=proxy_ports, data=st.data())
def test_failed_enable_leaves_nothing_behind(ports: list[int], proxy_port: int, data):
    failing = str(data.draw(st.sampled_from(ports)))
    with tempfile.TemporaryDirectory() as tmp:
        _, firewall, router, _ = _stack(tmp)
        firewall.fail_on = lambda args: failing in args

        async def scenario():
            with pytest.raises(RoutingError):
                await router.enable_routing("eth0", [], ports, proxy_port, masquerade=True)
            assert await router.is_routing_active() is False
            assert firewall.chains == {}
            assert all(not targets for targets in firewall.hooks.values())
            assert router.ruleset is None

        asyncio.run(scenario())


@settings(max_examples=100, deadline=None)
@given(ports=redirect_port_lists, proxy_port=proxy_ports, connect=st.booleans())
def test_routing_applied_only_when_connected(ports: list[int], proxy_port: int, connect: bool):
    with tempfile.TemporaryDirectory() as tmp:
        controller, firewall, router, _ = _stack(tmp, connect=connect)

        async def scenario():
            try:
                await router.enable_routing(None, [], ports, proxy_port)
            except RoutingError:
                pass
            if await router.is_routing_active():
                assert controller.state in CONNECTED_STATES
            else:
                assert firewall.rule_count() == 0

        asyncio.run(scenario())


@settings(max_examples=100, deadline=None)
@given(
    ports=redirect_port_lists,
    proxy_port=proxy_ports,
    dropped=st.booleans(),
    unreadable=st.booleans(),
)
def test_routing_follows_real_client_state(
    ports: list[int], proxy_port: int, dropped: bool, unreadable: bool
):
    """The gate trusts the client, not the last state this process saw."""
    with tempfile.TemporaryDirectory() as tmp:
        _, firewall, router, client = _stack(tmp)
        client.connected = not dropped
        if unreadable:
            client.probe_error = ClientConnectionError("warp-svc not running")

        async def scenario():
            try:
                await router.enable_routing(None, [], ports, proxy_port)
            except RoutingError:
                pass
            client.probe_error = None
            if await router.is_routing_active():
                assert client.connected and not unreadable
            else:
                assert firewall.rule_count() == 0

        asyncio.run(scenario())
