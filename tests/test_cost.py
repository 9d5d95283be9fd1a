"""Tests for flat-rate and per-model cost calculation."""

from __future__ import annotations

import pytest

from qstatus.config import CostMode
from qstatus.core.cost import (
    MODEL_PRICING,
    ClaudeCostCalculator,
    estimate_usd,
    format_cost,
    format_usd,
)
from qstatus.core.models import ClaudeTokenUsage


@pytest.fixture
def usage() -> ClaudeTokenUsage:
    return ClaudeTokenUsage(
        input_tokens=1_000_000,
        output_tokens=1_000_000,
        cache_creation_input_tokens=1_000_000,
        cache_read_input_tokens=1_000_000,
    )


class TestFlatRate:
    def test_estimate_usd(self):
        assert estimate_usd(2000, 0.0025) == pytest.approx(0.005)
        assert estimate_usd(0, 0.0025) == 0.0

    def test_format(self):
        assert format_usd(1234.5) == "$1,234.50"
        assert format_cost(0.0042) == "$0.0042"
        assert format_cost(0.0) == "$0.00"
        assert format_cost(1.5) == "$1.50"


class TestClaudeCostCalculator:
    def test_sonnet_pricing_per_category(self, usage):
        cost = ClaudeCostCalculator.calculate_cost(usage, "claude-3-5-sonnet-20241022", CostMode.CALCULATE)
        # 3 input + 15 output + 3.75 cache write + 0.30 cache read
        assert cost == pytest.approx(22.05)

    def test_opus_pricing(self):
        usage = ClaudeTokenUsage(input_tokens=1_000_000, output_tokens=0)
        assert ClaudeCostCalculator.calculate_cost(usage, "claude-3-opus-20240229") == pytest.approx(15.0)

    def test_normalizes_provider_prefix_and_dots(self):
        assert ClaudeCostCalculator.normalize_model_name("anthropic/Claude-3.5-Sonnet") == "claude-3-5-sonnet"
        assert ClaudeCostCalculator.pricing_for("bedrock/claude-3-haiku-20240307") is MODEL_PRICING["claude-3-haiku"]

    def test_fuzzy_family_match(self):
        assert ClaudeCostCalculator.pricing_for("claude-opus-4-1-preview") is MODEL_PRICING["claude-opus-4-1"]
        assert ClaudeCostCalculator.pricing_for("claude-sonnet-4-5-20990101") is MODEL_PRICING["claude-sonnet-4"]
        assert ClaudeCostCalculator.pricing_for("claude-3-5-haiku-next") is MODEL_PRICING["claude-3-5-haiku"]

    def test_unknown_model_uses_default(self):
        assert ClaudeCostCalculator.pricing_for("gpt-4o") is MODEL_PRICING["claude-3-5-sonnet-20241022"]
        assert ClaudeCostCalculator.pricing_for(None) is MODEL_PRICING["claude-3-5-sonnet-20241022"]

    def test_display_mode_uses_supplied_cost_only(self, usage):
        assert ClaudeCostCalculator.calculate_cost(usage, "claude-3-opus", CostMode.DISPLAY, 1.25) == 1.25
        assert ClaudeCostCalculator.calculate_cost(usage, "claude-3-opus", CostMode.DISPLAY, None) == 0.0

    def test_calculate_mode_ignores_supplied_cost(self):
        usage = ClaudeTokenUsage(input_tokens=1_000_000, output_tokens=0)
        cost = ClaudeCostCalculator.calculate_cost(usage, "claude-3-5-sonnet", CostMode.CALCULATE, 99.0)
        assert cost == pytest.approx(3.0)

    def test_auto_mode_prefers_positive_supplied_cost(self):
        usage = ClaudeTokenUsage(input_tokens=1_000_000, output_tokens=0)
        assert ClaudeCostCalculator.calculate_cost(usage, "claude-3-5-sonnet", CostMode.AUTO, 0.5) == 0.5
        assert ClaudeCostCalculator.calculate_cost(usage, "claude-3-5-sonnet", CostMode.AUTO, 0.0) == pytest.approx(3.0)

    def test_context_window(self):
        assert ClaudeCostCalculator.context_window_for("claude-2.0") == 100_000
        assert ClaudeCostCalculator.context_window_for(None) == 200_000

    def test_available_models_sorted(self):
        models = ClaudeCostCalculator.available_models()
        assert models == sorted(models)
        assert "claude-3-opus" in models
