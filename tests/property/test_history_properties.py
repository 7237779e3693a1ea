"""Property tests for the health history ring buffer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, settings, strategies as st

from egress_sidecar.monitor.history import HealthHistory
from egress_sidecar.monitor.types import HealthSnapshot

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

gaps = st.lists(st.integers(min_value=0, max_value=600), min_size=1, max_size=60)


@settings(max_examples=100)
@given(
    gaps=gaps,
    max_entries=st.integers(min_value=1, max_value=20),
    retention=st.integers(min_value=1, max_value=3600),
)
def test_bounded_by_capacity_and_retention(gaps: list[int], max_entries: int, retention: int):
    history = HealthHistory(retention_seconds=retention, max_entries=max_entries)
    now = T0
    for gap in gaps:
        now += timedelta(seconds=gap)
        history.append(HealthSnapshot(timestamp=now, overall_healthy=True, score=100))

    kept = history.window(retention, now)
    assert len(history) <= max_entries
    assert len(kept) == len(history)
    assert all(now - snapshot.timestamp <= timedelta(seconds=retention) for snapshot in kept)
    assert history.latest().timestamp == now


@settings(max_examples=100)
@given(gaps=gaps, duration=st.integers(min_value=0, max_value=7200))
def test_window_is_ordered_subset(gaps: list[int], duration: int):
    history = HealthHistory(retention_seconds=86400, max_entries=100)
    now = T0
    for gap in gaps:
        now += timedelta(seconds=gap)
        history.append(HealthSnapshot(timestamp=now, overall_healthy=True, score=100))

    window = history.window(duration, now)
    timestamps = [snapshot.timestamp for snapshot in window]
    assert timestamps == sorted(timestamps)
    assert len(window) <= len(history)
