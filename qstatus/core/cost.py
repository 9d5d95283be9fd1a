"""Token-to-USD conversion.

Two flavours: a flat per-1k rate (``estimate_usd``), used for Amazon Q, and
``ClaudeCostCalculator``, which prices each token category per model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from qstatus.config import CostMode
from qstatus.core.models import DEFAULT_CLAUDE_MODEL, ClaudeTokenUsage

logger = logging.getLogger(__name__)


def estimate_usd(tokens: int, rate_per_1k: float) -> float:
    return (tokens / 1000.0) * rate_per_1k


def format_usd(value: float) -> str:
    return f"${value:,.2f}"


def format_cost(value: float) -> str:
    """Two decimals, or four for non-zero amounts under a cent."""
    if 0 < value < 0.01:
        return f"${value:.4f}"
    return f"${value:,.2f}"


@dataclass(frozen=True)
class ModelPricing:
    """USD per token for each category."""

    input_cost_per_token: float
    output_cost_per_token: float
    cache_creation_cost_per_token: float
    cache_read_cost_per_token: float
    max_tokens: int | None = None

    @classmethod
    def per_million(
        cls,
        input_per_million: float,
        output_per_million: float,
        cache_creation_multiplier: float = 1.25,
        cache_read_multiplier: float = 0.10,
        max_tokens: int | None = None,
    ) -> ModelPricing:
        per_token = input_per_million / 1_000_000.0
        return cls(
            input_cost_per_token=per_token,
            output_cost_per_token=output_per_million / 1_000_000.0,
            cache_creation_cost_per_token=per_token * cache_creation_multiplier,
            cache_read_cost_per_token=per_token * cache_read_multiplier,
            max_tokens=max_tokens,
        )


_SONNET_35 = ModelPricing.per_million(3.0, 15.0, max_tokens=200_000)
_OPUS = ModelPricing.per_million(15.0, 75.0, max_tokens=200_000)
_HAIKU_3 = ModelPricing.per_million(0.25, 1.25, max_tokens=200_000)
_HAIKU_35 = ModelPricing.per_million(1.0, 5.0, max_tokens=200_000)

MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-3-5-sonnet": _SONNET_35,
    "claude-3-5-sonnet-20241022": _SONNET_35,
    "claude-3-5-sonnet-latest": _SONNET_35,
    "claude-3-opus": _OPUS,
    "claude-3-opus-20240229": _OPUS,
    "claude-3-opus-latest": _OPUS,
    "claude-3-haiku": _HAIKU_3,
    "claude-3-haiku-20240307": _HAIKU_3,
    "claude-3-haiku-latest": _HAIKU_3,
    "claude-3-5-haiku": _HAIKU_35,
    "claude-3-5-haiku-20241022": _HAIKU_35,
    "claude-opus-4-1": _OPUS,
    "claude-opus-4-1-20250805": _OPUS,
    "claude-sonnet-4": _SONNET_35,
    "claude-sonnet-4-20250514": _SONNET_35,
    "claude-2.1": ModelPricing.per_million(8.0, 24.0, max_tokens=200_000),
    "claude-2.0": ModelPricing.per_million(8.0, 24.0, max_tokens=100_000),
    "claude-instant-1.2": ModelPricing.per_million(0.8, 2.4, max_tokens=100_000),
}

_PROVIDER_PREFIXES = ("anthropic/", "claude/", "bedrock/", "vertex/")


class ClaudeCostCalculator:
    """Model-aware cost calculation for Claude Code usage entries."""

    default_model = DEFAULT_CLAUDE_MODEL

    @staticmethod
    def normalize_model_name(model: str) -> str:
        name = model.lower()
        for prefix in _PROVIDER_PREFIXES:
            if name.startswith(prefix):
                name = name[len(prefix):]
        return (
            name.replace("claude-3.5-", "claude-3-5-")
            .replace("claude3.5", "claude-3-5")
            .replace("claude3-", "claude-3-")
        )

    @staticmethod
    def _fuzzy_match(name: str) -> ModelPricing | None:
        if "opus" in name:
            if "4-1" in name or "opus-4" in name:
                return MODEL_PRICING["claude-opus-4-1"]
            return MODEL_PRICING["claude-3-opus"]
        if "sonnet" in name:
            if "sonnet-4" in name:
                return MODEL_PRICING["claude-sonnet-4"]
            return MODEL_PRICING["claude-3-5-sonnet"]
        if "haiku" in name:
            if "3-5" in name or "3.5" in name:
                return MODEL_PRICING["claude-3-5-haiku"]
            return MODEL_PRICING["claude-3-haiku"]
        if "instant" in name:
            return MODEL_PRICING["claude-instant-1.2"]
        if "claude-2" in name:
            return MODEL_PRICING["claude-2.1"]
        return None

    @classmethod
    def pricing_for(cls, model: str | None) -> ModelPricing:
        """Exact match after normalisation, then family match, then the default model."""
        name = cls.normalize_model_name(model or cls.default_model)
        pricing = MODEL_PRICING.get(name) or cls._fuzzy_match(name)
        if pricing is None:
            logger.debug("No pricing for model %r, using %s", model, cls.default_model)
            pricing = MODEL_PRICING[cls.default_model]
        return pricing

    @classmethod
    def cost_from_tokens(cls, usage: ClaudeTokenUsage, model: str | None) -> float:
        p = cls.pricing_for(model)
        return (
            usage.input_tokens * p.input_cost_per_token
            + usage.output_tokens * p.output_cost_per_token
            + (usage.cache_creation_input_tokens or 0) * p.cache_creation_cost_per_token
            + (usage.cache_read_input_tokens or 0) * p.cache_read_cost_per_token
        )

    @classmethod
    def calculate_cost(
        cls,
        usage: ClaudeTokenUsage,
        model: str | None,
        mode: CostMode = CostMode.AUTO,
        existing_cost: float | None = None,
    ) -> float:
        """Cost of one entry under ``mode``.

        display: supplied cost only (0 if absent); calculate: always from
        tokens; auto: supplied cost when positive, else from tokens.
        """
        if mode is CostMode.DISPLAY:
            return existing_cost or 0.0
        if mode is CostMode.CALCULATE:
            return cls.cost_from_tokens(usage, model)
        if existing_cost is not None and existing_cost > 0:
            return existing_cost
        return cls.cost_from_tokens(usage, model)

    @classmethod
    def context_window_for(cls, model: str | None, default: int = 200_000) -> int:
        if not model:
            return default
        return cls.pricing_for(model).max_tokens or default

    @staticmethod
    def available_models() -> list[str]:
        return sorted(MODEL_PRICING)
