"""Bounded, time-windowed store of health snapshots."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta

from egress_sidecar.monitor.types import HealthSnapshot


class HealthHistory:
    """Ring buffer of snapshots, pruned on every write.

    Entries older than ``retention_seconds`` are evicted, and at most
    ``max_entries`` are kept. All access goes through one lock so readers on
    other threads never observe a partially updated buffer.
    """

    def __init__(self, retention_seconds: float = 86400, max_entries: int = 2880) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._retention = timedelta(seconds=retention_seconds)
        self._entries: deque[HealthSnapshot] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def append(self, snapshot: HealthSnapshot) -> None:
        with self._lock:
            self._entries.append(snapshot)
            self._prune(snapshot.timestamp)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._retention
        while self._entries and self._entries[0].timestamp < cutoff:
            self._entries.popleft()

    def latest(self) -> HealthSnapshot | None:
        with self._lock:
            return self._entries[-1] if self._entries else None

    def window(self, duration_seconds: float, now: datetime) -> list[HealthSnapshot]:
        """Snapshots taken within ``duration_seconds`` before ``now``, oldest first."""
        cutoff = now - timedelta(seconds=duration_seconds)
        with self._lock:
            return [entry for entry in self._entries if entry.timestamp >= cutoff]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
