"""Snapshot-history metrics for the headline status figures."""

from __future__ import annotations

from typing import Sequence

from qstatus.core.models import HealthState, UsageSnapshot


def usage_percent(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return min(100.0, max(0.0, used / limit * 100.0))


def tokens_per_minute(history: Sequence[UsageSnapshot]) -> float:
    """Token growth between the oldest and newest snapshot, per minute."""
    if len(history) < 2:
        return 0.0
    ordered = sorted(history, key=lambda s: s.timestamp)
    first, last = ordered[0], ordered[-1]
    minutes = (last.timestamp - first.timestamp).total_seconds() / 60.0
    if minutes <= 0:
        return 0.0
    return max(0, last.tokens_used - first.tokens_used) / minutes


def time_to_limit(remaining: int, rate_per_min: float) -> float | None:
    """Seconds until ``remaining`` tokens are used at ``rate_per_min``."""
    if rate_per_min <= 0 or remaining <= 0:
        return None
    return remaining / rate_per_min * 60.0


def health_state(percent: float) -> HealthState:
    if percent >= 90:
        return HealthState.CRITICAL
    if percent >= 70:
        return HealthState.WARNING
    if percent <= 0:
        return HealthState.IDLE
    return HealthState.HEALTHY


def sparkline(history: Sequence[UsageSnapshot], points: int = 60) -> list[float]:
    """Per-step token deltas over the last ``points`` snapshots (first point is 0)."""
    values = [float(s.tokens_used) for s in history[-points:]]
    if len(values) < 2:
        return values
    return [0.0] + [max(0.0, values[i] - values[i - 1]) for i in range(1, len(values))]


def format_ttl(seconds: float | None) -> str:
    if seconds is None:
        return "—"
    mins = int(seconds / 60)
    hrs = mins // 60
    if hrs > 0:
        return f"{hrs}h {mins % 60}m"
    return f"{mins}m"
