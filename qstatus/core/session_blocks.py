"""Session blocks — 5-hour billing windows over a Claude Code session.

A session's entries are walked in time order. A block opens at the first
entry's timestamp floored to the UTC hour and stays open until an entry
arrives more than ``duration`` after the block start or after the previous
entry. A silence longer than ``duration`` also produces an empty gap block
covering ``last entry + duration`` up to the entry that resumes activity.

Blocks never overlap: a block that would start (after flooring) before the
previous block or gap ends starts at that end instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from qstatus.core.models import ClaudeUsageEntry, SessionBlock, TokenCounts, iso_utc

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DURATION = timedelta(hours=5)


def floor_to_hour(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Block partitioning ──────────────────────────────────────────────────


def _build_block(
    start: datetime,
    entries: list[ClaudeUsageEntry],
    now: datetime,
    duration: timedelta,
) -> SessionBlock:
    end = start + duration
    actual_end = entries[-1].date or start
    is_active = (now - actual_end) < duration and now < end

    inp = out = cache_create = cache_read = 0
    cost = 0.0
    models: set[str] = set()
    for entry in entries:
        usage = entry.usage
        inp += usage.input_tokens
        out += usage.output_tokens
        cache_create += usage.cache_creation_input_tokens or 0
        cache_read += usage.cache_read_input_tokens or 0
        cost += entry.cost_usd or 0.0
        if entry.message.model:
            models.add(entry.message.model)

    return SessionBlock(
        id=iso_utc(start),
        start_time=start,
        end_time=end,
        actual_end_time=actual_end,
        is_active=is_active,
        is_gap=False,
        entries=tuple(entries),
        token_counts=TokenCounts(inp, out, cache_create, cache_read),
        cost_usd=cost,
        models=frozenset(models),
    )


def _build_gap(last_activity: datetime, next_activity: datetime, duration: timedelta) -> SessionBlock | None:
    if next_activity - last_activity <= duration:
        return None
    start = last_activity + duration
    return SessionBlock(
        id=f"gap-{iso_utc(start)}",
        start_time=start,
        end_time=next_activity,
        is_gap=True,
    )


def identify_session_blocks(
    entries: Iterable[ClaudeUsageEntry],
    duration: timedelta = DEFAULT_SESSION_DURATION,
    now: datetime | None = None,
) -> list[SessionBlock]:
    """Partition entries into blocks and gap blocks, in time order."""
    now = now or _utcnow()
    dated = [e for e in entries if e.date is not None]
    if not dated:
        return []
    dated.sort(key=lambda e: e.date)

    blocks: list[SessionBlock] = []
    block_start: datetime | None = None
    current: list[ClaudeUsageEntry] = []

    for entry in dated:
        entry_time = entry.date
        if block_start is None:
            block_start = floor_to_hour(entry_time)
            current = [entry]
            continue

        last_time = current[-1].date
        since_start = entry_time - block_start
        since_last = entry_time - last_time
        if since_start > duration or since_last > duration:
            blocks.append(_build_block(block_start, current, now, duration))
            if since_last > duration:
                gap = _build_gap(last_time, entry_time, duration)
                if gap is not None:
                    blocks.append(gap)
            # Hour floor, but never before the previous block ends. A gap ends at
            # the resuming entry, so the block after a gap starts at that entry.
            block_start = max(floor_to_hour(entry_time), blocks[-1].end_time)
            current = [entry]
        else:
            current.append(entry)

    if block_start is not None and current:
        blocks.append(_build_block(block_start, current, now, duration))
    return blocks


def current_block(blocks: list[SessionBlock]) -> tuple[SessionBlock | None, int]:
    """The active block (or the last one) and its 1-based position; ``(None, 0)`` when empty."""
    for idx, block in enumerate(blocks):
        if block.is_active:
            return block, idx + 1
    if blocks:
        return blocks[-1], len(blocks)
    return None, 0


def filter_recent_blocks(
    blocks: list[SessionBlock],
    days: int = 3,
    now: datetime | None = None,
) -> list[SessionBlock]:
    """Blocks that started within the last ``days`` days, plus any still active."""
    cutoff = (now or _utcnow()) - timedelta(days=days)
    return [b for b in blocks if b.start_time >= cutoff or b.is_active]


# ── Burn rate & projection ──────────────────────────────────────────────


@dataclass(frozen=True)
class BurnRate:
    tokens_per_minute: float
    tokens_per_minute_for_indicator: float  # excludes cache tokens
    cost_per_hour: float


@dataclass(frozen=True)
class ProjectedUsage:
    total_tokens: int
    total_cost: float
    remaining_minutes: int


def calculate_burn_rate(block: SessionBlock) -> BurnRate | None:
    """Rates over the span from the block's first to last entry.

    ``None`` for gap blocks, empty blocks and zero-length spans.
    """
    if block.is_gap or not block.entries:
        return None
    first = block.entries[0].date
    last = block.entries[-1].date
    if first is None or last is None:
        return None
    minutes = (last - first).total_seconds() / 60.0
    if minutes <= 0:
        return None

    counts = block.token_counts
    return BurnRate(
        tokens_per_minute=counts.total_tokens / minutes,
        tokens_per_minute_for_indicator=(counts.input_tokens + counts.output_tokens) / minutes,
        cost_per_hour=(block.cost_usd / minutes) * 60.0,
    )


def project_block_usage(block: SessionBlock, now: datetime | None = None) -> ProjectedUsage | None:
    """Where an active block will end up if the current burn rate holds."""
    if not block.is_active or block.is_gap:
        return None
    rate = calculate_burn_rate(block)
    if rate is None:
        return None

    now = now or _utcnow()
    remaining = max(0.0, (block.end_time - now).total_seconds() / 60.0)
    total_tokens = block.token_counts.total_tokens + rate.tokens_per_minute * remaining
    total_cost = block.cost_usd + (rate.cost_per_hour / 60.0) * remaining
    return ProjectedUsage(
        total_tokens=round(total_tokens),
        total_cost=round(total_cost * 100) / 100,
        remaining_minutes=round(remaining),
    )
