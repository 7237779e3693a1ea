"""Per-node proxy egress sidecar.

Installs and drives a local tunnel client in SOCKS proxy mode, steers
selected traffic into it with NAT rules, and monitors the egress path.
"""

__version__ = "1.0.0"
