"""Firewall programming backends.

``FirewallBackend`` is the only way rule commands reach the host; the
traffic router composes its primitives. ``IptablesBackend`` issues
``iptables -w`` commands through the bounded command runner.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from egress_sidecar.middleware.error_handler import RoutingError
from egress_sidecar.system.commands import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class FirewallBackend(ABC):
    """Primitive chain/rule operations on one host firewall."""

    @abstractmethod
    async def chain_exists(self, table: str, chain: str) -> bool: ...

    @abstractmethod
    async def create_chain(self, table: str, chain: str) -> None: ...

    @abstractmethod
    async def flush_chain(self, table: str, chain: str) -> None: ...

    @abstractmethod
    async def delete_chain(self, table: str, chain: str) -> None: ...

    @abstractmethod
    async def append_rule(self, table: str, chain: str, args: list[str]) -> None: ...

    @abstractmethod
    async def list_rules(self, table: str, chain: str) -> list[str]:
        """Rule specs in the chain, one string per rule, in order."""

    @abstractmethod
    async def hook_exists(self, table: str, parent: str, chain: str) -> bool: ...

    @abstractmethod
    async def add_hook(self, table: str, parent: str, chain: str) -> None: ...

    @abstractmethod
    async def remove_hook(self, table: str, parent: str, chain: str) -> None: ...

    @abstractmethod
    async def enable_ip_forwarding(self) -> None: ...


class IptablesBackend(FirewallBackend):
    """``iptables`` implementation.

    Parameters
    ----------
    runner:
        Command runner with the per-call timeout.
    binary:
        ``iptables`` (or ``iptables-legacy`` / ``iptables-nft``).
    """

    def __init__(self, runner: CommandRunner, binary: str = "iptables") -> None:
        self._runner = runner
        self._binary = binary

    async def _iptables(self, table: str, *args: str) -> CommandResult:
        return await self._runner.run([self._binary, "-w", "-t", table, *args])

    async def _checked(self, table: str, *args: str) -> None:
        result = await self._iptables(table, *args)
        if not result.ok:
            raise RoutingError(
                f"{result.describe()} failed (rc={result.returncode}): {result.output}",
                command=result.describe(),
            )

    async def chain_exists(self, table: str, chain: str) -> bool:
        result = await self._iptables(table, "-n", "-L", chain)
        return result.ok

    async def create_chain(self, table: str, chain: str) -> None:
        await self._checked(table, "-N", chain)

    async def flush_chain(self, table: str, chain: str) -> None:
        await self._checked(table, "-F", chain)

    async def delete_chain(self, table: str, chain: str) -> None:
        await self._checked(table, "-X", chain)

    async def append_rule(self, table: str, chain: str, args: list[str]) -> None:
        await self._checked(table, "-A", chain, *args)

    async def list_rules(self, table: str, chain: str) -> list[str]:
        result = await self._iptables(table, "-S", chain)
        if not result.ok:
            return []
        prefix = f"-A {chain} "
        return [
            line[len(prefix):].strip()
            for line in result.stdout.splitlines()
            if line.startswith(prefix)
        ]

    async def hook_exists(self, table: str, parent: str, chain: str) -> bool:
        result = await self._iptables(table, "-C", parent, "-j", chain)
        return result.ok

    async def add_hook(self, table: str, parent: str, chain: str) -> None:
        await self._checked(table, "-A", parent, "-j", chain)

    async def remove_hook(self, table: str, parent: str, chain: str) -> None:
        await self._checked(table, "-D", parent, "-j", chain)

    async def enable_ip_forwarding(self) -> None:
        result = await self._runner.run(["sysctl", "-w", "net.ipv4.ip_forward=1"])
        if not result.ok:
            raise RoutingError(f"Failed to enable IP forwarding: {result.output}")
