"""Network probes used by the health monitor and the connectivity test."""

from __future__ import annotations

import asyncio
import logging
import socket

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TARGETS: tuple[str, ...] = (
    "https://1.1.1.1",
    "https://cloudflare.com",
    "https://www.google.com",
)
DEFAULT_DNS_NAMES: tuple[str, ...] = ("cloudflare.com", "google.com")

# SOCKS5 greeting offering only "no authentication"
_SOCKS5_GREETING = b"\x05\x01\x00"
_SOCKS5_ACCEPT = b"\x05\x00"


class NetworkProber:
    """Checks that the local SOCKS proxy answers and can reach the internet.

    Each method returns ``(passed, message)`` and does not raise on network
    failures. Timeouts are applied by the caller.
    """

    def __init__(
        self,
        *,
        probe_targets: list[str] | tuple[str, ...] = DEFAULT_PROBE_TARGETS,
        dns_names: list[str] | tuple[str, ...] = DEFAULT_DNS_NAMES,
        request_timeout: float = 10.0,
        host: str = "127.0.0.1",
    ) -> None:
        self._targets = list(probe_targets)
        self._dns_names = list(dns_names)
        self._request_timeout = request_timeout
        self._host = host

    async def check_socks_port(self, port: int) -> tuple[bool, str]:
        """Perform a SOCKS5 greeting against the proxy port."""
        try:
            reader, writer = await asyncio.open_connection(self._host, port)
        except OSError as exc:
            return False, f"Proxy port {port} not reachable: {exc}"

        try:
            writer.write(_SOCKS5_GREETING)
            await writer.drain()
            reply = await reader.readexactly(2)
        except (OSError, asyncio.IncompleteReadError) as exc:
            return False, f"Proxy port {port} did not answer the SOCKS5 greeting: {exc}"
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if reply != _SOCKS5_ACCEPT:
            return False, f"Proxy port {port} rejected the SOCKS5 greeting ({reply.hex()})"
        return True, f"SOCKS5 proxy answering on port {port}"

    async def check_internet(self, port: int) -> tuple[bool, str]:
        """GET each target through the proxy; passes on the first response below 400."""
        errors: list[str] = []
        async with httpx.AsyncClient(
            proxy=f"socks5://{self._host}:{port}",
            timeout=httpx.Timeout(self._request_timeout),
            follow_redirects=False,
        ) as client:
            for target in self._targets:
                try:
                    response = await client.get(target)
                except httpx.HTTPError as exc:
                    errors.append(f"{target}: {type(exc).__name__}")
                    continue
                if response.status_code < 400:
                    return True, f"Reached {target} via proxy (HTTP {response.status_code})"
                errors.append(f"{target}: HTTP {response.status_code}")

        logger.debug("Internet probe failed: %s", "; ".join(errors))
        return False, "No target reachable via proxy: " + "; ".join(errors)

    async def check_dns(self) -> tuple[bool, str]:
        """Resolve the configured names; passes if any resolves."""
        loop = asyncio.get_running_loop()
        failures: list[str] = []
        for name in self._dns_names:
            try:
                await loop.getaddrinfo(name, 443, type=socket.SOCK_STREAM)
            except OSError as exc:
                failures.append(f"{name}: {exc}")
                continue
            return True, f"Resolved {name}"
        return False, "DNS resolution failed: " + "; ".join(failures)
