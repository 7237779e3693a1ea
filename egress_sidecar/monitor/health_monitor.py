"""Periodic health monitoring of the proxy egress path.

A background asyncio task runs a cycle of five checks every
``interval_seconds``. Each check has its own timeout and a failing check is
recorded in the snapshot, never raised. Snapshots go into a bounded,
time-windowed history that HTTP handlers read concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from egress_sidecar.client.controller import ProxyClientController
from egress_sidecar.middleware.error_handler import AlreadyRunningError
from egress_sidecar.monitor.history import HealthHistory
from egress_sidecar.monitor.probes import NetworkProber
from egress_sidecar.monitor.scoring import (
    DEFAULT_THRESHOLD,
    compute_score,
    identify_issues,
    is_overall_healthy,
    summarize,
)
from egress_sidecar.monitor.types import (
    CheckName,
    ComponentFlags,
    HealthCheckResult,
    HealthSnapshot,
    MonitorState,
)

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[HealthSnapshot], object]
CheckFn = Callable[[], Awaitable[tuple[bool, str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    """Scores the egress path and keeps a rolling history of results.

    Parameters
    ----------
    controller:
        Tunnel client controller, used for the installation and connection
        checks and for the current proxy port.
    prober:
        Network probes for the proxy, internet and DNS checks.
    interval_seconds:
        Delay between the end of one cycle and the start of the next.
    check_timeout_seconds:
        Upper bound for each individual check.
    threshold:
        Minimum score for the node to count as healthy.
    retention_seconds, max_entries:
        History bounds.
    clock:
        Returns the current UTC time. Injected by tests.
    """

    def __init__(
        self,
        controller: ProxyClientController,
        prober: NetworkProber,
        *,
        interval_seconds: float = 30.0,
        check_timeout_seconds: float = 10.0,
        threshold: int = DEFAULT_THRESHOLD,
        retention_seconds: float = 86400,
        max_entries: int = 2880,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._controller = controller
        self._prober = prober
        self._interval = interval_seconds
        self._check_timeout = check_timeout_seconds
        self._threshold = threshold
        self._clock = clock
        self._history = HealthHistory(retention_seconds, max_entries)

        self._state = MonitorState.STOPPED
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._callbacks: list[SnapshotCallback] = []
        self._callback_tasks: set[asyncio.Future] = set()

        self._cycles = 0
        self._disconnections = 0
        self._was_connected: bool | None = None
        self._last_connected: datetime | None = None

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == MonitorState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, stop_event: asyncio.Event | None = None) -> None:
        """Start the periodic loop. Setting ``stop_event`` ends it.

        Raises
        ------
        AlreadyRunningError
            The loop is already running.
        """
        if self._task is not None and not self._task.done():
            raise AlreadyRunningError()

        self._stop_event = stop_event or asyncio.Event()
        self._state = MonitorState.RUNNING
        self._task = asyncio.create_task(self._loop(self._stop_event), name="health-monitor")
        logger.info("Health monitor started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the in-flight cycle."""
        if self._task is None:
            self._state = MonitorState.STOPPED
            return

        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._state = MonitorState.STOPPED
        logger.info("Health monitor stopped")

    async def _loop(self, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    await self._cycle(stop_event)
                except Exception:  # noqa: BLE001
                    logger.exception("Health check cycle failed")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._state = MonitorState.STOPPED

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def run_health_check(self) -> HealthSnapshot:
        """Run one full cycle now, record it and return the snapshot."""
        snapshot = await self._cycle(None)
        assert snapshot is not None
        return snapshot

    async def _cycle(self, stop_event: asyncio.Event | None) -> HealthSnapshot | None:
        """Run all checks in order. Returns None if stopped part-way."""
        checks: list[tuple[CheckName, CheckFn]] = [
            (CheckName.INSTALLATION, self._check_installation),
            (CheckName.CONNECTION, self._check_connection),
            (CheckName.PROXY, self._check_proxy),
            (CheckName.INTERNET, self._check_internet),
            (CheckName.DNS, self._check_dns),
        ]

        results: dict[str, HealthCheckResult] = {}
        for name, check in checks:
            if stop_event is not None and stop_event.is_set():
                logger.debug("Health check cycle interrupted by stop request")
                return None
            results[name.value] = await self._run_check(name, check)

        return self._record(results)

    async def _run_check(self, name: CheckName, check: CheckFn) -> HealthCheckResult:
        started = time.monotonic()
        try:
            passed, message = await asyncio.wait_for(check(), timeout=self._check_timeout)
        except asyncio.TimeoutError:
            passed, message = False, f"Timed out after {self._check_timeout:.0f}s"
        except Exception as exc:  # noqa: BLE001
            passed, message = False, f"{type(exc).__name__}: {getattr(exc, 'message', exc)}"

        latency_ms = (time.monotonic() - started) * 1000
        if not passed:
            logger.debug(
                "Health check %s failed: %s",
                name.value,
                message,
                extra={"check_name": name.value, "duration_ms": round(latency_ms, 1)},
            )
        return HealthCheckResult(
            check_name=name.value, passed=passed, message=message, latency_ms=latency_ms
        )

    async def _check_installation(self) -> tuple[bool, str]:
        if await self._controller.is_installed():
            return True, "Tunnel client installed"
        return False, "Tunnel client not installed"

    async def _check_connection(self) -> tuple[bool, str]:
        status = await self._controller.observe()
        if status.connected:
            return True, f"Tunnel client connected ({status.state.value})"
        reason = f": {status.reason}" if status.reason else ""
        return False, f"Tunnel client not connected ({status.state.value}){reason}"

    async def _check_proxy(self) -> tuple[bool, str]:
        return await self._prober.check_socks_port(self._controller.proxy_port)

    async def _check_internet(self) -> tuple[bool, str]:
        return await self._prober.check_internet(self._controller.proxy_port)

    async def _check_dns(self) -> tuple[bool, str]:
        return await self._prober.check_dns()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _record(self, results: dict[str, HealthCheckResult]) -> HealthSnapshot:
        passed = {name: result.passed for name, result in results.items()}
        score = compute_score(passed)
        healthy = is_overall_healthy(score, passed, self._threshold)
        now = self._clock()

        connected = passed.get(CheckName.CONNECTION.value, False)
        if connected and not self._was_connected:
            self._last_connected = now
        elif self._was_connected and not connected:
            self._disconnections += 1
            logger.warning("Tunnel client disconnection detected", extra={"score": score})
        self._was_connected = connected

        internet = results.get(CheckName.INTERNET.value)
        latency_ms = internet.latency_ms if internet is not None and internet.passed else None
        uptime = (
            (now - self._last_connected).total_seconds()
            if connected and self._last_connected is not None
            else None
        )

        snapshot = HealthSnapshot(
            timestamp=now,
            overall_healthy=healthy,
            score=score,
            checks=results,
            component_flags=ComponentFlags.from_checks(results),
            message=summarize(score, healthy, passed),
            latency_ms=latency_ms,
            issues=identify_issues(passed, latency_ms, self._disconnections),
            connection_uptime_seconds=uptime,
            last_connected=self._last_connected,
            disconnection_count=self._disconnections,
        )
        self._history.append(snapshot)
        self._cycles += 1

        log = logger.info if healthy else logger.warning
        log(snapshot.message, extra={"score": score})

        self._notify(snapshot)
        return snapshot

    def register_callback(self, callback: SnapshotCallback) -> None:
        """Call ``callback(snapshot)`` after every recorded cycle.

        Coroutine callbacks are scheduled as tasks; their failures are logged.
        """
        self._callbacks.append(callback)

    def _notify(self, snapshot: HealthSnapshot) -> None:
        for callback in self._callbacks:
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_done)
            except Exception:  # noqa: BLE001
                logger.exception("Health snapshot callback failed")

    def _callback_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Health snapshot callback failed: %s",
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_status(self) -> HealthSnapshot | None:
        """Most recent snapshot, without probing."""
        return self._history.latest()

    def get_historical_data(self, duration_seconds: float) -> list[HealthSnapshot]:
        """Snapshots from the trailing ``duration_seconds``, oldest first."""
        if duration_seconds < 0:
            raise ValueError("duration_seconds must not be negative")
        return self._history.window(duration_seconds, self._clock())

    def get_stats(self) -> dict:
        latest = self._history.latest()
        return {
            "running": self.is_running,
            "state": self._state.value,
            "interval_seconds": self._interval,
            "cycles": self._cycles,
            "disconnections": self._disconnections,
            "history_size": len(self._history),
            "last_score": latest.score if latest else None,
            "last_check_at": latest.timestamp.isoformat() if latest else None,
            "latency_ms": latest.latency_ms if latest else None,
            "connection_uptime_seconds": latest.connection_uptime_seconds if latest else None,
            "last_connected": (
                self._last_connected.isoformat() if self._last_connected else None
            ),
            "issues": list(latest.issues) if latest else [],
        }
