"""All "used / limit" percentage math lives here.

The status line, the session table and the dashboard all call these helpers,
so the numbers they show can never disagree.
"""

from __future__ import annotations

from qstatus.core.cost import format_usd
from qstatus.core.models import ActiveSessionData, ClaudeSession, SessionBlock

# Typical spend of one 5-hour block, used as the cost baseline.
COST_BASELINE_USD = 140.0
# Token baseline when there is no completed block to compare against.
DEFAULT_TOKEN_BASELINE = 10_000_000
MESSAGE_QUOTA = 5_000


def token_percentage_vs_baseline(tokens: int, max_from_previous: int | None) -> float:
    """Tokens against the personal peak of completed blocks, capped at 100."""
    baseline = max_from_previous if max_from_previous is not None else DEFAULT_TOKEN_BASELINE
    if baseline <= 0:
        return 0.0
    return min(100.0, tokens / baseline * 100.0)


def token_percentage(tokens: int, limit: int, capped: bool = True) -> float:
    if limit <= 0:
        return 0.0
    pct = tokens / limit * 100.0
    return min(100.0, pct) if capped else pct


def cost_percentage(cost: float, use_block_baseline: bool, monthly_limit: float | None = None) -> float:
    """Cost against the per-block baseline, or against a monthly plan limit."""
    if use_block_baseline:
        return min(100.0, cost / COST_BASELINE_USD * 100.0)
    if monthly_limit is not None and monthly_limit > 0:
        return min(100.0, cost / monthly_limit * 100.0)
    return 0.0


def critical_percentage(
    active_session: ActiveSessionData | None,
    max_tokens_from_previous_blocks: int | None,
    monthly_cost: float | None = None,
    monthly_limit: float | None = None,
) -> float:
    """Whichever of token and cost usage is closer to its limit.

    Falls back to monthly cost against the plan limit when nothing is active.
    """
    if active_session is not None:
        block = active_session.current_block
        if block is not None:
            tokens, cost = block.token_counts.total_tokens, block.cost_usd
        else:
            tokens, cost = active_session.tokens, active_session.cost
        return max(
            token_percentage_vs_baseline(tokens, max_tokens_from_previous_blocks),
            cost_percentage(cost, use_block_baseline=True),
        )
    if monthly_cost is not None and monthly_limit is not None and monthly_limit > 0:
        return cost_percentage(monthly_cost, use_block_baseline=False, monthly_limit=monthly_limit)
    return 0.0


def critical_metric(
    active_session: ActiveSessionData | None,
    max_tokens_from_previous_blocks: int | None,
) -> tuple[str, bool]:
    """``("Tokens", True)`` when tokens are at least as close to the limit as cost."""
    if active_session is None or active_session.current_block is None:
        return "Cost", False
    block = active_session.current_block
    token_pct = token_percentage_vs_baseline(block.token_counts.total_tokens, max_tokens_from_previous_blocks)
    cost_pct = cost_percentage(block.cost_usd, use_block_baseline=True)
    if token_pct >= cost_pct:
        return "Tokens", True
    return "Cost", False


def critical_metric_display(
    active_session: ActiveSessionData | None,
    max_tokens_from_previous_blocks: int | None,
) -> tuple[str, str, float]:
    """(current, limit, percentage) strings for whichever metric is critical."""
    baseline_str = format_usd(COST_BASELINE_USD)
    if active_session is None or active_session.current_block is None:
        return format_usd(0.0), baseline_str, 0.0
    block = active_session.current_block
    _, token_critical = critical_metric(active_session, max_tokens_from_previous_blocks)
    if token_critical:
        baseline = max_tokens_from_previous_blocks if max_tokens_from_previous_blocks is not None else DEFAULT_TOKEN_BASELINE
        return (
            format_tokens(block.token_counts.total_tokens),
            format_tokens(baseline),
            token_percentage_vs_baseline(block.token_counts.total_tokens, max_tokens_from_previous_blocks),
        )
    return format_usd(block.cost_usd), baseline_str, cost_percentage(block.cost_usd, use_block_baseline=True)


def session_percentage(
    session: ClaudeSession,
    block: SessionBlock | None,
    max_tokens_from_previous_blocks: int | None,
) -> float:
    """Block-level critical percentage, or session tokens alone without a block."""
    if block is not None:
        return max(
            token_percentage_vs_baseline(block.token_counts.total_tokens, max_tokens_from_previous_blocks),
            cost_percentage(block.cost_usd, use_block_baseline=True),
        )
    return token_percentage_vs_baseline(session.total_tokens, max_tokens_from_previous_blocks)


def message_quota_percentage(messages: int, quota: int = MESSAGE_QUOTA) -> float:
    if quota <= 0:
        return 0.0
    return min(100.0, messages / quota * 100.0)


# ── Colour bands ────────────────────────────────────────────────────────
# Message quota uses 90/75/50; the critical-percentage display uses 95/80/60.


def message_quota_color(messages: int, quota: int = MESSAGE_QUOTA) -> str:
    pct = message_quota_percentage(messages, quota)
    if pct >= 90:
        return "red"
    if pct >= 75:
        return "orange"
    if pct >= 50:
        return "yellow"
    return "secondary"


def critical_percentage_color(percent: float) -> str:
    if percent >= 95:
        return "red"
    if percent >= 80:
        return "orange"
    if percent >= 60:
        return "yellow"
    return "green"


def usage_color(percent: float) -> str:
    if percent >= 90:
        return "red"
    if percent >= 70:
        return "orange"
    if percent >= 50:
        return "yellow"
    return "green"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)
