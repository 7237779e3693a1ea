"""Proxy client controller.

Owns the tunnel client's lifecycle state. Every operation re-probes the
client first and reconciles against what it observes, because the daemon
can be restarted or reconfigured behind this process's back. Operations are
idempotent upserts: asking for a state the client is already in succeeds
without touching it.

State transitions (observed, not assumed):
- not_installed → installed: ensure_installed()
- installed → registered: connect() registers first when needed
- registered/disconnected → connected: connect()
- connected → proxy_mode_enabled: enable_proxy_mode()
- any → failed: a status probe that could not read the client
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable

from egress_sidecar.client.backend import TunnelClientBackend
from egress_sidecar.client.types import (
    CONNECTED_STATES,
    ClientMode,
    ClientOptions,
    ClientProbe,
    ClientStatus,
    ProxyClientState,
)
from egress_sidecar.middleware.error_handler import (
    ClientConnectionError,
    ConfigurationError,
    EgressError,
    InstallationError,
    ProbeTimeoutError,
    ProxyModeError,
)
from egress_sidecar.system.host import detect_os_family, is_port_bound

logger = logging.getLogger(__name__)


class ProxyClientController:
    """Lifecycle manager for the external tunnel client.

    Parameters
    ----------
    backend:
        Capability implementation (``WarpCliBackend`` in production).
    options:
        Initial client options supplied by the host process.
    connect_retries:
        Connection attempts before ``connect`` gives up.
    connect_backoff_seconds:
        Base delay between attempts; doubles each retry (1s, 2s, 4s ...).
    connect_wait_seconds:
        How long to wait for the client to report "connected" after a
        connect request was accepted.
    poll_interval_seconds:
        Delay between status probes while waiting.
    os_release_path:
        File used to detect the OS family for installation.
    port_checker:
        Returns True when a local port is already bound.
    """

    def __init__(
        self,
        backend: TunnelClientBackend,
        *,
        options: ClientOptions | None = None,
        connect_retries: int = 3,
        connect_backoff_seconds: float = 1.0,
        connect_wait_seconds: float = 15.0,
        poll_interval_seconds: float = 1.0,
        os_release_path: str = "/etc/os-release",
        port_checker: Callable[[int], bool] = is_port_bound,
    ) -> None:
        self._backend = backend
        self._options = options or ClientOptions()
        self._connect_retries = max(1, connect_retries)
        self._connect_backoff = connect_backoff_seconds
        self._connect_wait = connect_wait_seconds
        self._poll_interval = poll_interval_seconds
        self._os_release_path = os_release_path
        self._port_checker = port_checker

        self._state = ProxyClientState.NOT_INSTALLED
        self._transitions: deque[ProxyClientState] = deque([self._state], maxlen=32)
        self._last_status: ClientStatus | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProxyClientState:
        """Last observed state (no probing)."""
        return self._state

    @property
    def transitions(self) -> list[ProxyClientState]:
        """Recent distinct states, oldest first."""
        return list(self._transitions)

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def proxy_port(self) -> int:
        return self._options.proxy_port

    @property
    def last_status(self) -> ClientStatus | None:
        return self._last_status

    # ------------------------------------------------------------------
    # State derivation
    # ------------------------------------------------------------------

    def _derive_state(self, probe: ClientProbe) -> ProxyClientState:
        if not probe.installed:
            return ProxyClientState.NOT_INSTALLED
        if not probe.registered:
            return ProxyClientState.INSTALLED
        if probe.connected:
            if probe.mode == ClientMode.PROXY:
                return ProxyClientState.PROXY_MODE_ENABLED
            return ProxyClientState.CONNECTED
        if self._state in CONNECTED_STATES or self._state == ProxyClientState.DISCONNECTED:
            return ProxyClientState.DISCONNECTED
        return ProxyClientState.REGISTERED

    def _set_state(self, new_state: ProxyClientState) -> None:
        if new_state != self._state:
            logger.info(
                "Tunnel client state %s -> %s",
                self._state.value,
                new_state.value,
                extra={"client_state": new_state.value},
            )
            self._transitions.append(new_state)
        self._state = new_state

    async def _reprobe(self, error_cls: type[EgressError]) -> ClientProbe:
        """Probe the client and update state; wrap probe failures in ``error_cls``."""
        try:
            probe = await self._backend.probe()
        except EgressError as exc:
            raise error_cls(f"Could not read tunnel client status: {exc.message}") from exc
        self._set_state(self._derive_state(probe))
        return probe

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    async def is_installed(self) -> bool:
        """Cheap presence probe; safe to call on every health cycle."""
        try:
            return await self._backend.is_installed()
        except (EgressError, OSError):
            return False

    async def ensure_installed(self) -> None:
        """Install the client if absent; a no-op when already installed.

        Raises
        ------
        InstallationError
            Unsupported OS family, installer failure or timeout.
        """
        if await self.is_installed():
            if self._state == ProxyClientState.NOT_INSTALLED:
                self._set_state(ProxyClientState.INSTALLED)
            logger.debug("Tunnel client already installed")
            return

        os_family = detect_os_family(self._os_release_path)
        if os_family is None:
            raise InstallationError(
                f"Unsupported OS for {self._backend.name} installation "
                f"(checked {self._os_release_path})"
            )

        logger.info("Installing %s for %s", self._backend.name, os_family)
        try:
            await self._backend.install(os_family)
        except ProbeTimeoutError as exc:
            raise InstallationError(f"Installer timed out: {exc.message}") from exc

        if not await self.is_installed():
            raise InstallationError(
                f"Installer finished but {self._backend.name} is still not available"
            )
        self._set_state(ProxyClientState.INSTALLED)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def configure(self, options: ClientOptions) -> None:
        """Write client settings. License keys are attached once registered.

        Raises
        ------
        ConfigurationError
            If the client is missing or rejects the settings.
        """
        probe = await self._reprobe(ConfigurationError)
        if not probe.installed:
            raise ConfigurationError("Tunnel client is not installed")

        try:
            await self._backend.configure(options)
            if options.license_key and probe.registered:
                await self._backend.set_license(options.license_key)
        except ProbeTimeoutError as exc:
            raise ConfigurationError(f"Client configuration timed out: {exc.message}") from exc

        self._options = options
        logger.info(
            "Tunnel client configured (proxy_port=%d, client_type=%s, organization=%s)",
            options.proxy_port,
            options.client_type,
            options.organization or "-",
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> ClientStatus:
        """Register if needed, then connect. Already connected counts as success.

        Raises
        ------
        ClientConnectionError
            With the client's diagnostic text after all retries fail.
        """
        probe = await self._reprobe(ClientConnectionError)
        if not probe.installed:
            raise ClientConnectionError("Tunnel client is not installed")
        if probe.connected:
            logger.debug("Tunnel client already connected")
            return self._status_from_probe(probe)

        if not probe.registered:
            try:
                await self._backend.register(self._options.organization)
                if self._options.license_key:
                    await self._backend.set_license(self._options.license_key)
            except ProbeTimeoutError as exc:
                raise ClientConnectionError(f"Registration timed out: {exc.message}") from exc
            except ConfigurationError as exc:
                raise ClientConnectionError(f"Registration rejected: {exc.message}") from exc
            self._set_state(ProxyClientState.REGISTERED)

        last_reason = "unknown error"
        for attempt in range(self._connect_retries):
            try:
                await self._backend.connect()
                if await self._wait_until_connected():
                    return self._status_from_probe(await self._reprobe(ClientConnectionError))
                last_reason = (
                    f"client did not report connected within {self._connect_wait:.0f}s"
                )
            except (ClientConnectionError, ProbeTimeoutError) as exc:
                last_reason = exc.message

            if attempt < self._connect_retries - 1:
                backoff = self._connect_backoff * (2**attempt)
                logger.warning(
                    "Connect attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt + 1,
                    self._connect_retries,
                    last_reason,
                    backoff,
                )
                await asyncio.sleep(backoff)

        raise ClientConnectionError(
            f"Failed to connect after {self._connect_retries} attempts: {last_reason}"
        )

    async def _wait_until_connected(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._connect_wait
        while True:
            probe = await self._reprobe(ClientConnectionError)
            if probe.connected:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self._poll_interval)

    async def disconnect(self) -> None:
        """Disconnect the client; a no-op if it is not connected."""
        probe = await self._reprobe(ClientConnectionError)
        if not probe.connected:
            return
        await self._backend.disconnect()
        await self._reprobe(ClientConnectionError)

    # ------------------------------------------------------------------
    # Proxy mode
    # ------------------------------------------------------------------

    async def enable_proxy_mode(self, port: int | None = None) -> None:
        """Switch the connected client into local SOCKS proxy mode on ``port``.

        Raises
        ------
        ProxyModeError
            Client not connected, port taken by another process, or the
            client refused the mode.
        """
        port = port or self._options.proxy_port
        probe = await self._reprobe(ProxyModeError)

        if self._state not in CONNECTED_STATES:
            raise ProxyModeError(
                f"Proxy mode requires a connected client (state: {self._state.value})"
            )

        if probe.mode == ClientMode.PROXY and probe.proxy_port == port:
            logger.debug("Proxy mode already enabled on port %d", port)
            return

        if self._port_checker(port):
            raise ProxyModeError(
                f"Port {port} is already bound by another process", port=port
            )

        try:
            await self._backend.enable_proxy_mode(port)
        except ProbeTimeoutError as exc:
            raise ProxyModeError(f"Switching to proxy mode timed out: {exc.message}") from exc

        self._options = self._options.model_copy(update={"proxy_port": port})
        probe = await self._reprobe(ProxyModeError)
        if probe.mode != ClientMode.PROXY:
            raise ProxyModeError(
                f"{self._backend.name} did not enter proxy mode (mode: {probe.mode.value})"
            )
        logger.info("Proxy mode enabled on 127.0.0.1:%d", port)

    async def disable_proxy_mode(self) -> None:
        """Return the client to full tunnel mode; a no-op outside proxy mode."""
        probe = await self._reprobe(ProxyModeError)
        if not probe.installed or probe.mode != ClientMode.PROXY:
            return
        await self._backend.disable_proxy_mode()
        await self._reprobe(ProxyModeError)
        logger.info("Proxy mode disabled")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _build_status(self, state: ProxyClientState, probe: ClientProbe) -> ClientStatus:
        return ClientStatus(
            state=state,
            installed=probe.installed,
            registered=probe.registered,
            connected=probe.connected,
            mode=probe.mode,
            proxy_port=probe.proxy_port,
        )

    def _status_from_probe(self, probe: ClientProbe) -> ClientStatus:
        status = self._build_status(self._state, probe)
        self._last_status = status
        return status

    async def refresh_state(self) -> ProxyClientState:
        """Re-probe the client and return the observed state.

        An unreadable client is reported as FAILED. Used as the routing gate.
        """
        try:
            await self._reprobe(ClientConnectionError)
        except ClientConnectionError as exc:
            logger.warning("Tunnel client status probe failed: %s", exc.message)
            self._set_state(ProxyClientState.FAILED)
        return self._state

    async def observe(self) -> ClientStatus:
        """Probe the client without recording anything. Never raises.

        Observers running outside the node lock (the health monitor, the
        connectivity test) use this so they cannot move the lifecycle state.
        """
        try:
            probe = await self._backend.probe()
        except Exception as exc:  # noqa: BLE001
            reason = exc.message if isinstance(exc, EgressError) else str(exc)
            return ClientStatus(state=ProxyClientState.FAILED, reason=reason)
        return self._build_status(self._derive_state(probe), probe)

    async def status(self, include_exit_info: bool = True) -> ClientStatus:
        """Probe the client. Never raises: probe failures yield state FAILED."""
        try:
            probe = await self._backend.probe()
        except Exception as exc:  # noqa: BLE001
            reason = exc.message if isinstance(exc, EgressError) else str(exc)
            logger.warning("Tunnel client status probe failed: %s", reason)
            self._set_state(ProxyClientState.FAILED)
            status = ClientStatus(state=ProxyClientState.FAILED, reason=reason)
            self._last_status = status
            return status

        self._set_state(self._derive_state(probe))
        status = self._status_from_probe(probe)

        if include_exit_info and probe.connected and probe.mode == ClientMode.PROXY:
            try:
                info = await self._backend.exit_info(probe.proxy_port or self.proxy_port)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Exit IP lookup failed: %s", exc)
            else:
                status.ip_address = info.get("ip")
                status.location = info.get("loc")
        return status
