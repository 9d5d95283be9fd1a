"""Tests for the shared percentage and colour helpers."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from qstatus.core.models import ActiveSessionData, ClaudeSession, SessionBlock, TokenCounts
from qstatus.core.percentage import (
    COST_BASELINE_USD,
    DEFAULT_TOKEN_BASELINE,
    cost_percentage,
    critical_metric,
    critical_metric_display,
    critical_percentage,
    critical_percentage_color,
    format_tokens,
    message_quota_color,
    message_quota_percentage,
    session_percentage,
    token_percentage,
    token_percentage_vs_baseline,
    usage_color,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def block(tokens: int, cost: float) -> SessionBlock:
    return SessionBlock(
        id="2024-01-01T00:00:00Z",
        start_time=T0,
        end_time=T0,
        is_active=True,
        token_counts=TokenCounts(input_tokens=tokens),
        cost_usd=cost,
    )


def active(current: SessionBlock | None, tokens: int = 0, cost: float = 0.0) -> ActiveSessionData:
    return ActiveSessionData(
        session_id="s1",
        start_time=T0,
        last_activity=T0,
        tokens=tokens,
        cumulative_tokens=tokens,
        cost=cost,
        is_active=True,
        message_count=1,
        cwd=None,
        model=None,
        cost_from_jsonl=False,
        messages_per_hour=0.0,
        tokens_per_hour=0.0,
        cost_per_hour=0.0,
        current_block=current,
        block_number=1 if current else 0,
        total_blocks=1 if current else 0,
    )


def session(total_input: int) -> ClaudeSession:
    return ClaudeSession(
        id="s1", start_time=T0, end_time=T0, entries=[],
        total_input_tokens=total_input, total_output_tokens=0,
        total_cache_creation_tokens=0, total_cache_read_tokens=0,
        total_cost=0.0, total_cost_from_jsonl=0.0, models=[], cwd=None, message_count=0,
    )


class TestTokenPercentages:
    def test_default_baseline(self):
        assert token_percentage_vs_baseline(DEFAULT_TOKEN_BASELINE // 2, None) == pytest.approx(50.0)

    def test_personal_max_baseline_and_cap(self):
        assert token_percentage_vs_baseline(500, 1000) == pytest.approx(50.0)
        assert token_percentage_vs_baseline(5000, 1000) == 100.0

    def test_zero_baseline(self):
        assert token_percentage_vs_baseline(10, 0) == 0.0

    def test_capped_and_uncapped(self):
        assert token_percentage(300, 200) == 100.0
        assert token_percentage(300, 200, capped=False) == pytest.approx(150.0)
        assert token_percentage(10, 0) == 0.0

    @pytest.mark.parametrize("tokens", [0, 1, 999, 10**9])
    def test_bounds(self, tokens):
        assert 0.0 <= token_percentage(tokens, 1000) <= 100.0
        assert token_percentage(tokens, 1000, capped=False) >= 0.0


class TestCostPercentage:
    def test_block_baseline(self):
        assert cost_percentage(COST_BASELINE_USD / 4, use_block_baseline=True) == pytest.approx(25.0)
        assert cost_percentage(1000.0, use_block_baseline=True) == 100.0

    def test_monthly_limit(self):
        assert cost_percentage(10.0, use_block_baseline=False, monthly_limit=20.0) == pytest.approx(50.0)
        assert cost_percentage(10.0, use_block_baseline=False, monthly_limit=0.0) == 0.0
        assert cost_percentage(10.0, use_block_baseline=False) == 0.0


class TestCriticalPercentage:
    def test_cost_wins_when_higher(self):
        # 4M of the 10M default baseline is 40%; $119 of $140 is 85%
        data = active(block(4_000_000, 119.0))
        assert critical_percentage(data, None) == pytest.approx(85.0)
        assert critical_metric(data, None) == ("Cost", False)

    def test_tokens_win_ties(self):
        data = active(block(5_000_000, COST_BASELINE_USD / 2))
        assert critical_metric(data, None) == ("Tokens", True)

    def test_uses_session_values_without_block(self):
        assert critical_percentage(active(None, tokens=1_000_000, cost=70.0), None) == pytest.approx(50.0)

    def test_monthly_fallback_without_active_session(self):
        assert critical_percentage(None, None, monthly_cost=15.0, monthly_limit=20.0) == pytest.approx(75.0)
        assert critical_percentage(None, None, monthly_cost=15.0, monthly_limit=0.0) == 0.0
        assert critical_percentage(None, None) == 0.0

    def test_monotonic_in_tokens_and_cost(self):
        previous = 0.0
        for tokens in range(0, 12_000_000, 1_000_000):
            pct = critical_percentage(active(block(tokens, 30.0)), None)
            assert pct >= previous
            previous = pct
        previous = 0.0
        for cost in range(0, 200, 10):
            pct = critical_percentage(active(block(2_000_000, float(cost))), None)
            assert pct >= previous
            previous = pct

    def test_display_strings(self):
        assert critical_metric_display(None, None) == ("$0.00", "$140.00", 0.0)
        current, limit, pct = critical_metric_display(active(block(1_500_000, 1.0)), 3_000_000)
        assert (current, limit) == ("1.5M", "3.0M")
        assert pct == pytest.approx(50.0)
        current, limit, pct = critical_metric_display(active(block(0, 70.0)), None)
        assert (current, limit) == ("$70.00", "$140.00")
        assert pct == pytest.approx(50.0)


class TestSessionPercentage:
    def test_with_block(self):
        assert session_percentage(session(0), block(500, 0.0), 1000) == pytest.approx(50.0)

    def test_without_block_uses_session_tokens(self):
        assert session_percentage(session(250), None, 1000) == pytest.approx(25.0)


class TestColours:
    def test_message_quota_bands(self):
        assert message_quota_percentage(2500) == pytest.approx(50.0)
        assert message_quota_color(4500) == "red"
        assert message_quota_color(3750) == "orange"
        assert message_quota_color(2500) == "yellow"
        assert message_quota_color(100) == "secondary"

    def test_critical_bands(self):
        assert critical_percentage_color(95) == "red"
        assert critical_percentage_color(80) == "orange"
        assert critical_percentage_color(60) == "yellow"
        assert critical_percentage_color(59.9) == "green"

    def test_usage_bands(self):
        assert usage_color(90) == "red"
        assert usage_color(70) == "orange"
        assert usage_color(50) == "yellow"
        assert usage_color(10) == "green"


class TestFormatTokens:
    def test_units(self):
        assert format_tokens(999) == "999"
        assert format_tokens(1200) == "1.2K"
        assert format_tokens(3_400_000) == "3.4M"
