"""Host facts needed by the controller: OS family and local port occupancy."""

from __future__ import annotations

import errno
import socket
from pathlib import Path

_DEBIAN_IDS = {"debian", "ubuntu", "linuxmint", "pop", "raspbian"}
_RHEL_IDS = {"rhel", "centos", "fedora", "rocky", "almalinux", "ol", "amzn"}


def _parse_os_release(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key.strip()] = value.strip().strip('"').strip("'")
    return fields


def detect_os_family(os_release_path: str = "/etc/os-release") -> str | None:
    """Return ``"debian"``, ``"rhel"`` or None for an unsupported/unknown OS."""
    path = Path(os_release_path)
    if not path.exists():
        return None

    fields = _parse_os_release(path.read_text(encoding="utf-8", errors="replace"))
    ids = {fields.get("ID", "").lower()}
    ids.update(fields.get("ID_LIKE", "").lower().split())

    if ids & _DEBIAN_IDS:
        return "debian"
    if ids & _RHEL_IDS:
        return "rhel"
    return None


def is_port_bound(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether some process already listens on ``host:port``.

    Tries to bind the port; EADDRINUSE means it is taken.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # Ignore TIME_WAIT leftovers; a live listener still blocks the bind.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            return exc.errno in (errno.EADDRINUSE, errno.EACCES)
    return False
