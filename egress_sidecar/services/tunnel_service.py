"""Outbound configuration of the local Hysteria2 tunnel service.

When egress goes through the proxy client, the tunnel service on the node
needs a SOCKS5 outbound pointing at the local proxy port plus an ACL that
keeps private destinations direct. Other keys in the service's YAML config
are left as they are.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path

import yaml

from egress_sidecar.middleware.error_handler import ConfigurationError
from egress_sidecar.routing.router import ALWAYS_BYPASS_CIDRS
from egress_sidecar.system.commands import CommandRunner

logger = logging.getLogger(__name__)

OUTBOUND_NAME = "egress-proxy"


def build_acl(outbound: str = OUTBOUND_NAME) -> list[str]:
    """Inline ACL: private ranges direct, everything else via ``outbound``."""
    rules = [f"direct({cidr})" for cidr in ALWAYS_BYPASS_CIDRS]
    rules.append(f"{outbound}(all)")
    return rules


class TunnelServiceConfigurator:
    """Reads, edits and writes the tunnel service config, then restarts it.

    Parameters
    ----------
    runner:
        Command runner used for ``systemctl``.
    config_path:
        Path of the service's YAML config.
    unit:
        systemd unit restarted after a change. ``None`` skips the restart.
    """

    def __init__(
        self,
        runner: CommandRunner,
        config_path: str | Path,
        unit: str | None = None,
    ) -> None:
        self._runner = runner
        self._path = Path(config_path)
        self._unit = unit

    @property
    def config_path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # File handling
    # ------------------------------------------------------------------

    def _load(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Cannot read tunnel service config {self._path}: {exc}"
            ) from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Tunnel service config {self._path} is not a mapping"
            )
        return data

    def _save(self, config: dict) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot write tunnel service config {self._path}: {exc}"
            ) from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                yaml.safe_dump(config, fh, sort_keys=False, default_flow_style=False)
            os.replace(tmp_name, self._path)
        except (OSError, yaml.YAMLError) as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise ConfigurationError(
                f"Cannot write tunnel service config {self._path}: {exc}"
            ) from exc

    @staticmethod
    def _without_outbound(outbounds: object) -> list[dict]:
        if not isinstance(outbounds, list):
            return []
        return [
            entry
            for entry in outbounds
            if not (isinstance(entry, dict) and entry.get("name") == OUTBOUND_NAME)
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def render(
        self,
        config: dict,
        proxy_port: int,
        listen_port: int | None = None,
        bandwidth_up_mbps: int | None = None,
        bandwidth_down_mbps: int | None = None,
    ) -> dict:
        """Return ``config`` with the egress outbound and ACL applied."""
        updated = dict(config)
        if listen_port is not None:
            updated["listen"] = f":{listen_port}"
        if bandwidth_up_mbps or bandwidth_down_mbps:
            existing = updated.get("bandwidth") or {}
            if not isinstance(existing, dict):
                raise ConfigurationError(
                    f"Tunnel service config {self._path}: 'bandwidth' must be a mapping "
                    f"with up/down keys, found {existing!r}"
                )
            bandwidth = dict(existing)
            if bandwidth_up_mbps:
                bandwidth["up"] = f"{bandwidth_up_mbps} mbps"
            if bandwidth_down_mbps:
                bandwidth["down"] = f"{bandwidth_down_mbps} mbps"
            updated["bandwidth"] = bandwidth

        outbounds = self._without_outbound(updated.get("outbounds"))
        outbounds.append(
            {
                "name": OUTBOUND_NAME,
                "type": "socks5",
                "socks5": {"addr": f"127.0.0.1:{proxy_port}"},
            }
        )
        updated["outbounds"] = outbounds
        updated["acl"] = {"inline": build_acl()}
        return updated

    async def attach_outbound(
        self,
        proxy_port: int,
        listen_port: int | None = None,
        bandwidth_up_mbps: int | None = None,
        bandwidth_down_mbps: int | None = None,
    ) -> None:
        """Route the tunnel service's egress through the local proxy.

        Raises
        ------
        ConfigurationError
            The config could not be read or written, or the restart failed.
        """
        config = await asyncio.to_thread(self._load)
        updated = self.render(
            config, proxy_port, listen_port, bandwidth_up_mbps, bandwidth_down_mbps
        )
        if updated == config:
            logger.debug("Tunnel service outbound already configured")
            return

        await asyncio.to_thread(self._save, updated)
        logger.info(
            "Tunnel service outbound %s -> 127.0.0.1:%d written to %s",
            OUTBOUND_NAME,
            proxy_port,
            self._path,
        )
        await self.restart_service()

    async def detach_outbound(self) -> bool:
        """Remove the egress outbound and its ACL. Returns True if anything changed."""
        config = await asyncio.to_thread(self._load)
        if not self.is_attached(config):
            return False

        updated = dict(config)
        outbounds = self._without_outbound(updated.get("outbounds"))
        if outbounds:
            updated["outbounds"] = outbounds
        else:
            updated.pop("outbounds", None)
        acl = updated.get("acl")
        if isinstance(acl, dict) and acl.get("inline") == build_acl():
            updated.pop("acl")

        await asyncio.to_thread(self._save, updated)
        logger.info("Tunnel service outbound %s removed", OUTBOUND_NAME)
        await self.restart_service()
        return True

    def is_attached(self, config: dict | None = None) -> bool:
        if config is None:
            config = self._load()
        outbounds = config.get("outbounds")
        if not isinstance(outbounds, list):
            return False
        return any(
            isinstance(entry, dict) and entry.get("name") == OUTBOUND_NAME
            for entry in outbounds
        )

    async def restart_service(self) -> None:
        if not self._unit:
            return
        result = await self._runner.run(["systemctl", "restart", self._unit])
        if not result.ok:
            raise ConfigurationError(
                f"Failed to restart {self._unit}: {result.output}",
                command=result.describe(),
            )
        logger.info("Restarted %s", self._unit)
