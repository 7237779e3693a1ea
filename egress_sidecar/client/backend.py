"""Tunnel client capability interface and the ``warp-cli`` implementation.

The controller never shells out itself; it drives a ``TunnelClientBackend``.
``WarpCliBackend`` talks to the Cloudflare WARP daemon through ``warp-cli``.
Tests substitute an in-memory backend.
"""

from __future__ import annotations

import logging
import re
import shutil
from abc import ABC, abstractmethod

import httpx

from egress_sidecar.client.types import ClientMode, ClientOptions, ClientProbe
from egress_sidecar.middleware.error_handler import (
    ClientConnectionError,
    ConfigurationError,
    InstallationError,
    ProxyModeError,
)
from egress_sidecar.system.commands import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class TunnelClientBackend(ABC):
    """Capabilities the controller needs from a tunnel client.

    Implementations raise the typed errors from
    ``egress_sidecar.middleware.error_handler`` with the client's own
    diagnostic text; they do not track lifecycle state.
    """

    name: str = "tunnel-client"

    @abstractmethod
    async def is_installed(self) -> bool:
        """Cheap presence check."""

    @abstractmethod
    async def install(self, os_family: str) -> None:
        """Run the vendor installer for ``os_family`` (``debian`` or ``rhel``)."""

    @abstractmethod
    async def configure(self, options: ClientOptions) -> None:
        """Apply settings that do not need a registration."""

    @abstractmethod
    async def register(self, organization: str | None = None) -> None:
        """Create a device registration. Existing registrations are kept."""

    @abstractmethod
    async def set_license(self, license_key: str) -> None:
        """Attach a license key to the current registration."""

    @abstractmethod
    async def connect(self) -> None:
        """Ask the client to connect. "Already connected" is not an error."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Ask the client to disconnect."""

    @abstractmethod
    async def enable_proxy_mode(self, port: int) -> None:
        """Switch to local SOCKS proxy mode bound to ``port``."""

    @abstractmethod
    async def disable_proxy_mode(self) -> None:
        """Switch back to full tunnel mode."""

    @abstractmethod
    async def probe(self) -> ClientProbe:
        """Read the client's current facts. May raise on daemon failure."""

    async def exit_info(self, proxy_port: int) -> dict[str, str]:
        """Observed exit IP/location through the proxy, if the client offers it."""
        return {}


# ---------------------------------------------------------------------------
# warp-cli
# ---------------------------------------------------------------------------

_KEYRING = "/usr/share/keyrings/cloudflare-warp-archive-keyring.gpg"

_INSTALL_SCRIPTS: dict[str, list[str]] = {
    "debian": [
        f"curl -fsSL https://pkg.cloudflareclient.com/pubkey.gpg | gpg --yes --dearmor --output {_KEYRING}",
        f'echo "deb [signed-by={_KEYRING}] https://pkg.cloudflareclient.com/ $(lsb_release -cs) main"'
        " | tee /etc/apt/sources.list.d/cloudflare-client.list",
        "apt-get update",
        "DEBIAN_FRONTEND=noninteractive apt-get install -y cloudflare-warp",
        "systemctl enable --now warp-svc",
    ],
    "rhel": [
        "curl -fsSL https://pkg.cloudflareclient.com/cloudflare-warp-ascii.repo"
        " | tee /etc/yum.repos.d/cloudflare-warp.repo",
        "yum install -y cloudflare-warp",
        "systemctl enable --now warp-svc",
    ],
}

_SUPPORTED_CLIENT_TYPES = {"local"}

_STATUS_CONNECTED = re.compile(r"status update:\s*connected\b", re.IGNORECASE)
_REGISTRATION_MISSING = re.compile(r"registration missing|missing registration", re.IGNORECASE)
_MODE_LINE = re.compile(r"Mode:\s*(\w+)(?:\s+on port\s+(\d+))?", re.IGNORECASE)

TRACE_URL = "https://www.cloudflare.com/cdn-cgi/trace"


class WarpCliBackend(TunnelClientBackend):
    """Drives Cloudflare WARP through ``warp-cli``.

    Parameters
    ----------
    runner:
        Command runner used for every invocation.
    binary:
        Name or path of the CLI.
    install_timeout:
        Per-step budget for installer commands, in seconds.
    trace_timeout:
        Budget for the exit IP lookup through the proxy, in seconds.
    """

    name = "cloudflare-warp"

    def __init__(
        self,
        runner: CommandRunner,
        binary: str = "warp-cli",
        install_timeout: float = 600.0,
        trace_timeout: float = 5.0,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._install_timeout = install_timeout
        self._trace_timeout = trace_timeout

    async def _cli(self, *args: str) -> CommandResult:
        return await self._runner.run([self._binary, "--accept-tos", *args])

    async def is_installed(self) -> bool:
        return shutil.which(self._binary) is not None

    async def install(self, os_family: str) -> None:
        scripts = _INSTALL_SCRIPTS.get(os_family)
        if scripts is None:
            raise InstallationError(f"Unsupported OS family for {self.name}: {os_family}")

        for script in scripts:
            result = await self._runner.run_shell(script, timeout=self._install_timeout)
            if not result.ok:
                raise InstallationError(
                    f"Installer step failed (rc={result.returncode}): {script}",
                    output=result.output,
                )
        logger.info("Installed %s via %s packages", self.name, os_family)

    async def configure(self, options: ClientOptions) -> None:
        if options.client_type not in _SUPPORTED_CLIENT_TYPES:
            raise ConfigurationError(
                f"Client type '{options.client_type}' is not supported by {self.name}"
            )

        result = await self._cli("proxy", "port", str(options.proxy_port))
        if not result.ok:
            raise ConfigurationError(
                f"{self.name} rejected proxy port {options.proxy_port}: {result.output}"
            )

    async def register(self, organization: str | None = None) -> None:
        args = ["registration", "new"]
        if organization:
            args.append(organization)
        result = await self._cli(*args)
        if result.ok or "already" in result.output.lower():
            return
        raise ClientConnectionError(f"Registration failed: {result.output}")

    async def set_license(self, license_key: str) -> None:
        result = await self._runner.run(
            [self._binary, "--accept-tos", "registration", "license", license_key],
            redact=(license_key,),
        )
        if not result.ok:
            raise ConfigurationError(f"{self.name} rejected the license key: {result.output}")

    async def connect(self) -> None:
        result = await self._cli("connect")
        if result.ok or "already connected" in result.output.lower():
            return
        raise ClientConnectionError(f"Connect failed: {result.output}")

    async def disconnect(self) -> None:
        result = await self._cli("disconnect")
        if result.ok or "already disconnected" in result.output.lower():
            return
        raise ClientConnectionError(f"Disconnect failed: {result.output}")

    async def enable_proxy_mode(self, port: int) -> None:
        for args in (("proxy", "port", str(port)), ("mode", "proxy")):
            result = await self._cli(*args)
            if not result.ok:
                raise ProxyModeError(f"'{' '.join(args)}' failed: {result.output}", port=port)

    async def disable_proxy_mode(self) -> None:
        result = await self._cli("mode", "warp")
        if not result.ok:
            raise ProxyModeError(f"'mode warp' failed: {result.output}")

    async def probe(self) -> ClientProbe:
        if not await self.is_installed():
            return ClientProbe(installed=False)

        status = await self._cli("status")
        if not status.ok and not status.output:
            raise ClientConnectionError(
                f"Status probe failed (rc={status.returncode}); is warp-svc running?"
            )

        probe = ClientProbe(
            installed=True,
            registered=not _REGISTRATION_MISSING.search(status.output),
            connected=bool(_STATUS_CONNECTED.search(status.output)),
        )

        settings = await self._cli("settings")
        if settings.ok:
            probe.mode, probe.proxy_port = self._parse_mode(settings.output)
        return probe

    @staticmethod
    def _parse_mode(text: str) -> tuple[ClientMode, int | None]:
        match = _MODE_LINE.search(text)
        if match is None:
            return ClientMode.UNKNOWN, None
        name = match.group(1).lower()
        port = int(match.group(2)) if match.group(2) else None
        if "proxy" in name:
            return ClientMode.PROXY, port
        if name.startswith("warp"):
            return ClientMode.TUNNEL, None
        return ClientMode.UNKNOWN, port

    async def exit_info(self, proxy_port: int) -> dict[str, str]:
        """Read ``ip`` and ``loc`` from the Cloudflare trace endpoint via the proxy."""
        async with httpx.AsyncClient(
            proxy=f"socks5://127.0.0.1:{proxy_port}",
            timeout=httpx.Timeout(self._trace_timeout),
        ) as client:
            response = await client.get(TRACE_URL)
            response.raise_for_status()

        fields = dict(
            line.split("=", 1) for line in response.text.splitlines() if "=" in line
        )
        return {key: fields[key] for key in ("ip", "loc", "warp") if key in fields}
