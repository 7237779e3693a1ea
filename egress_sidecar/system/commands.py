"""Bounded external process execution.

Every interaction with the tunnel client binary, the firewall and systemd
goes through ``CommandRunner``. Calls are asyncio subprocesses with a
per-call timeout; a process that overruns its budget is killed and reported
as ``ProbeTimeoutError`` instead of being left hanging.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from egress_sidecar.middleware.error_handler import ProbeTimeoutError

logger = logging.getLogger(__name__)

# Exit status reported when the executable does not exist (same as sh).
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, used as diagnostic text."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)

    def describe(self) -> str:
        return " ".join(self.argv)


class CommandRunner:
    """Runs external commands with a default timeout.

    Parameters
    ----------
    default_timeout:
        Seconds allowed per command when the caller gives no explicit timeout.
    """

    def __init__(self, default_timeout: float = 15.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        redact: Sequence[str] = (),
    ) -> CommandResult:
        """Run ``argv`` and capture its output.

        Arguments listed in ``redact`` are masked wherever the command line is
        logged or reported; the returned ``argv`` is the masked form.

        Raises
        ------
        ProbeTimeoutError
            If the process does not exit within the timeout.
        """
        budget = timeout if timeout is not None else self._default_timeout
        args = tuple(argv)
        shown = tuple("***" if arg in redact else arg for arg in args)
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            logger.debug("Command not found: %s", args[0])
            return CommandResult(shown, COMMAND_NOT_FOUND, "", str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=budget)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(
                "Command timed out after %.1fs: %s",
                budget,
                " ".join(shown),
                extra={"command": " ".join(shown)},
            )
            raise ProbeTimeoutError(
                f"Command timed out after {budget:.1f}s: {' '.join(shown)}",
                command=" ".join(shown),
            )

        result = CommandResult(
            shown,
            process.returncode if process.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
        logger.debug(
            "Ran command: %s (rc=%d)",
            result.describe(),
            result.returncode,
            extra={
                "command": result.describe(),
                "returncode": result.returncode,
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
            },
        )
        return result

    async def run_shell(self, script: str, timeout: float | None = None) -> CommandResult:
        """Run a shell pipeline through ``sh -c`` (installer steps use pipes)."""
        return await self.run(["sh", "-c", script], timeout=timeout)
