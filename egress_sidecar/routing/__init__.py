"""Traffic routing package: rule descriptors, firewall backends and the router."""

from egress_sidecar.routing.firewall import FirewallBackend, IptablesBackend
from egress_sidecar.routing.router import ALWAYS_BYPASS_CIDRS, TrafficRouter
from egress_sidecar.routing.types import RoutingRule, RoutingRuleSet, RuleAction

__all__ = [
    "ALWAYS_BYPASS_CIDRS",
    "FirewallBackend",
    "IptablesBackend",
    "RoutingRule",
    "RoutingRuleSet",
    "RuleAction",
    "TrafficRouter",
]
