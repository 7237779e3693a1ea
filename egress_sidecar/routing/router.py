"""Traffic router: NAT rules that steer selected traffic into the local proxy.

The router owns one named chain in the ``nat`` table hooked from ``OUTPUT``:

1. RETURN for loopback and private ranges (always present, so the proxy
   never routes into itself or the LAN),
2. RETURN for caller-supplied extra CIDRs,
3. REDIRECT of the chosen destination ports to the proxy port.

Optionally a second chain hooked from ``POSTROUTING`` masquerades traffic
leaving the upstream interface.

Programming is declarative: an existing chain with the same name is flushed
and refilled, so enabling twice yields one chain and one hook. A failing
rule aborts the rest and rolls back whatever was applied.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Awaitable, Callable, Iterable

from egress_sidecar.client.types import CONNECTED_STATES, ProxyClientState
from egress_sidecar.middleware.error_handler import (
    EgressError,
    ProbeTimeoutError,
    RoutingError,
)
from egress_sidecar.routing.firewall import FirewallBackend
from egress_sidecar.routing.types import RoutingRule, RoutingRuleSet, RuleAction

logger = logging.getLogger(__name__)

ALWAYS_BYPASS_CIDRS: tuple[str, ...] = (
    "127.0.0.0/8",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "100.64.0.0/10",
)

# Upper bound when stripping duplicate hooks left by older runs.
_MAX_HOOK_REMOVALS = 16


class TrafficRouter:
    """Applies and reverts the egress NAT rule set.

    Parameters
    ----------
    firewall:
        Backend that executes chain/rule primitives.
    client_state:
        Coroutine function that re-probes the tunnel client and returns its
        state. Rules are only applied while it is connected.
    chain_name:
        Name of the redirect chain; the masquerade chain gets a ``-MASQ``
        suffix.
    """

    def __init__(
        self,
        firewall: FirewallBackend,
        *,
        client_state: Callable[[], Awaitable[ProxyClientState]],
        chain_name: str = "EGRESS-PROXY",
    ) -> None:
        self._firewall = firewall
        self._client_state = client_state
        self._chain = chain_name
        self._ruleset: RoutingRuleSet | None = None

    @property
    def chain_name(self) -> str:
        return self._chain

    @property
    def ruleset(self) -> RoutingRuleSet | None:
        """The rule set last applied by this process, if any."""
        return self._ruleset

    # ------------------------------------------------------------------
    # Rule set construction
    # ------------------------------------------------------------------

    def build_ruleset(
        self,
        interface_name: str | None,
        bypass_cidrs: Iterable[str],
        redirect_ports: Iterable[int],
        proxy_port: int,
        masquerade: bool = False,
    ) -> RoutingRuleSet:
        """Validate inputs and build the ordered rule set (no side effects)."""
        if not 1 <= proxy_port <= 65535:
            raise RoutingError(f"Invalid proxy port: {proxy_port}")

        bypass: list[str] = []
        for cidr in (*ALWAYS_BYPASS_CIDRS, *bypass_cidrs):
            try:
                network = str(ipaddress.ip_network(cidr.strip(), strict=False))
            except ValueError as exc:
                raise RoutingError(f"Invalid bypass CIDR '{cidr}': {exc}") from exc
            if network not in bypass:
                bypass.append(network)

        ports: list[int] = []
        for port in redirect_ports:
            if not 1 <= int(port) <= 65535:
                raise RoutingError(f"Invalid redirect port: {port}")
            if int(port) not in ports:
                ports.append(int(port))
        if not ports:
            raise RoutingError("At least one redirect port is required")

        rules = [RoutingRule(match=cidr, action=RuleAction.BYPASS) for cidr in bypass]
        rules += [
            RoutingRule(match=str(port), action=RuleAction.REDIRECT, target_port=proxy_port)
            for port in ports
        ]

        masquerade_rules: list[RoutingRule] = []
        if masquerade:
            if not interface_name:
                raise RoutingError("Masquerading requires an upstream interface name")
            masquerade_rules.append(
                RoutingRule(match=interface_name, action=RuleAction.MASQUERADE)
            )

        return RoutingRuleSet(
            chain=self._chain,
            rules=rules,
            proxy_port=proxy_port,
            interface=interface_name,
            masquerade_rules=masquerade_rules,
        )

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------

    async def enable_routing(
        self,
        interface_name: str | None,
        bypass_cidrs: Iterable[str],
        redirect_ports: Iterable[int],
        proxy_port: int,
        masquerade: bool = False,
    ) -> RoutingRuleSet:
        """Program the rule set. Re-applying an identical active set is a no-op.

        Raises
        ------
        RoutingError
            Client not connected, invalid input, or a failing rule (after
            rollback of everything applied so far).
        """
        state = await self._client_state()
        if state not in CONNECTED_STATES:
            raise RoutingError(
                f"Routing requires a connected tunnel client (state: {state.value})"
            )

        desired = self.build_ruleset(
            interface_name, bypass_cidrs, redirect_ports, proxy_port, masquerade
        )

        current = self._ruleset
        if (
            current is not None
            and current.applied
            and desired.same_rules(current)
            and await self.is_routing_active()
        ):
            logger.debug("Routing chain %s already active, nothing to do", self._chain)
            return current

        try:
            await self._program(desired)
        except EgressError as exc:
            logger.error(
                "Routing setup failed, rolling back: %s",
                exc.message,
                extra={"chain": self._chain, "error_reason": exc.message},
            )
            await self._remove_all(strict=False)
            self._ruleset = None
            if isinstance(exc, RoutingError):
                raise
            raise RoutingError(f"Routing setup failed: {exc.message}") from exc

        desired.applied = True
        self._ruleset = desired
        logger.info(
            "Routing enabled: %d rules in %s, redirect to :%d",
            len(desired.rules),
            self._chain,
            proxy_port,
            extra={"chain": self._chain},
        )
        return desired

    async def disable_routing(self) -> None:
        """Detach hooks and delete chains. Missing chains count as success."""
        await self._remove_all(strict=True)
        self._ruleset = None
        logger.info("Routing disabled", extra={"chain": self._chain})

    async def is_routing_active(self) -> bool:
        """True when the chain and its hook exist and the chain redirects."""
        try:
            if not await self._firewall.chain_exists("nat", self._chain):
                return False
            if not await self._firewall.hook_exists("nat", "OUTPUT", self._chain):
                return False
            rules = await self._firewall.list_rules("nat", self._chain)
        except EgressError:
            return False
        return any("REDIRECT" in rule for rule in rules)

    async def get_routing_status(self) -> dict:
        """Observed firewall state plus the rule set this process applied."""
        masq_chain = f"{self._chain}-MASQ"
        try:
            rules = await self._firewall.list_rules("nat", self._chain)
            masquerading = await self._firewall.hook_exists("nat", "POSTROUTING", masq_chain)
        except EgressError as exc:
            return {"active": False, "error": exc.message}

        return {
            "active": await self.is_routing_active(),
            "chain": self._chain,
            "rule_count": len(rules),
            "redirect_rules": sum(1 for rule in rules if "REDIRECT" in rule),
            "masquerading": masquerading,
            "ruleset": self._ruleset.to_dict() if self._ruleset else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _step(self, description: str, operation: Awaitable[None]) -> None:
        """Run one firewall primitive, normalizing failures to RoutingError."""
        try:
            await operation
        except (RoutingError, ProbeTimeoutError) as exc:
            raise RoutingError(
                f"Failed to apply {description}: {exc.message}", rule=description
            ) from exc

    async def _program(self, ruleset: RoutingRuleSet) -> None:
        await self._program_chain(ruleset.table, ruleset.chain, ruleset.hook, ruleset.rules)

        if ruleset.masquerade_rules:
            await self._step("ip forwarding", self._firewall.enable_ip_forwarding())
            await self._program_chain(
                ruleset.table,
                ruleset.masquerade_chain,
                "POSTROUTING",
                ruleset.masquerade_rules,
            )
        else:
            await self._remove_chain(ruleset.table, "POSTROUTING", ruleset.masquerade_chain)

    async def _program_chain(
        self, table: str, chain: str, hook: str, rules: list[RoutingRule]
    ) -> None:
        if await self._firewall.chain_exists(table, chain):
            await self._step(f"flush of chain {chain}", self._firewall.flush_chain(table, chain))
        else:
            await self._step(f"creation of chain {chain}", self._firewall.create_chain(table, chain))

        for rule in rules:
            await self._step(
                f"rule '{rule.describe()}'",
                self._firewall.append_rule(table, chain, rule.to_args()),
            )

        if not await self._firewall.hook_exists(table, hook, chain):
            await self._step(
                f"hook {hook} -> {chain}", self._firewall.add_hook(table, hook, chain)
            )

    async def _remove_all(self, *, strict: bool) -> None:
        errors: list[str] = []
        for hook, chain in (("OUTPUT", self._chain), ("POSTROUTING", f"{self._chain}-MASQ")):
            try:
                await self._remove_chain("nat", hook, chain)
            except EgressError as exc:
                if strict:
                    errors.append(exc.message)
                else:
                    logger.warning("Rollback of %s incomplete: %s", chain, exc.message)
        if errors:
            raise RoutingError("; ".join(errors))

    async def _remove_chain(self, table: str, hook: str, chain: str) -> None:
        for _ in range(_MAX_HOOK_REMOVALS):
            if not await self._firewall.hook_exists(table, hook, chain):
                break
            await self._firewall.remove_hook(table, hook, chain)

        if await self._firewall.chain_exists(table, chain):
            await self._firewall.flush_chain(table, chain)
            await self._firewall.delete_chain(table, chain)
