"""Tests for snapshot-history metrics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from qstatus.core.metrics import format_ttl, health_state, sparkline, time_to_limit, tokens_per_minute, usage_percent
from qstatus.core.models import HealthState, UsageSnapshot

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def snap(minutes: float, tokens: int) -> UsageSnapshot:
    return UsageSnapshot(timestamp=T0 + timedelta(minutes=minutes), tokens_used=tokens, message_count=0)


class TestUsagePercent:
    def test_clamped(self):
        assert usage_percent(22_000, 44_000) == pytest.approx(50.0)
        assert usage_percent(50_000, 44_000) == 100.0
        assert usage_percent(-5, 44_000) == 0.0
        assert usage_percent(10, 0) == 0.0


class TestTokensPerMinute:
    def test_oldest_to_newest(self):
        history = [snap(0, 1000), snap(5, 1500), snap(10, 3000)]
        assert tokens_per_minute(history) == pytest.approx(200.0)

    def test_unordered_history(self):
        assert tokens_per_minute([snap(10, 3000), snap(0, 1000)]) == pytest.approx(200.0)

    def test_drop_is_zero(self):
        assert tokens_per_minute([snap(0, 3000), snap(10, 1000)]) == 0.0

    def test_too_short(self):
        assert tokens_per_minute([]) == 0.0
        assert tokens_per_minute([snap(0, 10)]) == 0.0
        assert tokens_per_minute([snap(0, 10), snap(0, 20)]) == 0.0


class TestTimeToLimit:
    def test_seconds(self):
        assert time_to_limit(1000, 100.0) == pytest.approx(600.0)

    def test_no_rate(self):
        assert time_to_limit(1000, 0.0) is None
        assert time_to_limit(0, 100.0) is None

    def test_format(self):
        assert format_ttl(None) == "—"
        assert format_ttl(600) == "10m"
        assert format_ttl(3 * 3600 + 120) == "3h 2m"


class TestHealthState:
    @pytest.mark.parametrize(
        "percent,state",
        [(0, HealthState.IDLE), (10, HealthState.HEALTHY), (70, HealthState.WARNING), (95, HealthState.CRITICAL)],
    )
    def test_bands(self, percent, state):
        assert health_state(percent) is state


class TestSparkline:
    def test_deltas(self):
        history = [snap(0, 100), snap(1, 150), snap(2, 120), snap(3, 200)]
        assert sparkline(history) == [0.0, 50.0, 0.0, 80.0]

    def test_window(self):
        history = [snap(i, i * 10) for i in range(100)]
        points = sparkline(history, points=60)
        assert len(points) == 60
        assert points[1:] == [10.0] * 59
