"""Firewall rule descriptors for the traffic router."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RuleAction(str, Enum):
    """What a rule does with matching packets."""

    BYPASS = "bypass"  # leave the chain untouched (iptables RETURN)
    REDIRECT = "redirect"  # send to the local proxy port
    MASQUERADE = "masquerade"  # source NAT on the upstream interface


@dataclass(frozen=True)
class RoutingRule:
    """One NAT rule.

    ``match`` is a CIDR for BYPASS, a destination port for REDIRECT and an
    output interface name for MASQUERADE.
    """

    match: str
    action: RuleAction
    target_port: int | None = None
    protocol: str = "tcp"

    def to_args(self) -> list[str]:
        """iptables match/target arguments for this rule."""
        if self.action == RuleAction.BYPASS:
            return ["-d", self.match, "-j", "RETURN"]
        if self.action == RuleAction.REDIRECT:
            return [
                "-p", self.protocol,
                "--dport", self.match,
                "-j", "REDIRECT",
                "--to-ports", str(self.target_port),
            ]
        return ["-o", self.match, "-j", "MASQUERADE"]

    def describe(self) -> str:
        if self.action == RuleAction.BYPASS:
            return f"bypass {self.match}"
        if self.action == RuleAction.REDIRECT:
            return f"redirect {self.protocol}/{self.match} -> :{self.target_port}"
        return f"masquerade via {self.match}"


@dataclass
class RoutingRuleSet:
    """Ordered rules for one chain plus where the chain hooks in.

    ``applied`` is only ever True while the tunnel client is connected.
    """

    chain: str
    rules: list[RoutingRule]
    proxy_port: int
    interface: str | None = None
    table: str = "nat"
    hook: str = "OUTPUT"
    masquerade_rules: list[RoutingRule] = field(default_factory=list)
    applied: bool = False

    @property
    def masquerade_chain(self) -> str:
        return f"{self.chain}-MASQ"

    def same_rules(self, other: RoutingRuleSet | None) -> bool:
        """True when ``other`` would program exactly the same firewall state."""
        return (
            other is not None
            and self.chain == other.chain
            and self.table == other.table
            and self.hook == other.hook
            and self.rules == other.rules
            and self.masquerade_rules == other.masquerade_rules
        )

    def to_dict(self) -> dict:
        return {
            "chain": self.chain,
            "table": self.table,
            "hook": self.hook,
            "proxy_port": self.proxy_port,
            "interface": self.interface,
            "applied": self.applied,
            "rules": [rule.describe() for rule in self.rules],
            "masquerade": [rule.describe() for rule in self.masquerade_rules],
        }
