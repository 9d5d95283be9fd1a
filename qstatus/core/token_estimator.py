"""Heuristic token estimation for Amazon Q conversation blobs.

The conversation store keeps raw JSON, not tokenizer output, so tokens are
estimated from character counts at roughly 4 characters per token. Each
category (history, context files, tools, system prompts) is rounded to the
nearest 10 on its own and the rounded values are summed.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from qstatus.core.models import parse_timestamp

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4.0

COMPACTION_MARKERS = ("overflow", "compact", "summariz", "truncat")


def round_tokens(chars: int) -> int:
    """``floor((chars / 4 + 5) / 10) * 10``: always a multiple of 10."""
    if chars <= 0:
        return 0
    return int(math.floor((chars / CHARS_PER_TOKEN + 5.0) / 10.0)) * 10


def deep_count(value: Any) -> int:
    """Sum of string lengths anywhere inside a decoded JSON value."""
    if isinstance(value, str):
        return len(value)
    if isinstance(value, dict):
        return sum(deep_count(v) for v in value.values())
    if isinstance(value, list):
        return sum(deep_count(v) for v in value)
    return 0


def contains_compaction_marker(value: Any) -> bool:
    """True if any string inside ``value`` mentions overflow/compaction/summarizing/truncation.

    Plain substring matching, so a user simply asking to "summarize" trips it.
    """
    if isinstance(value, str):
        lowered = value.lower()
        return any(marker in lowered for marker in COMPACTION_MARKERS)
    if isinstance(value, dict):
        return any(contains_compaction_marker(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_compaction_marker(v) for v in value)
    return False


@dataclass(frozen=True)
class CharBreakdown:
    """Character counts per category, plus the raw blob length for the fallback."""

    history_chars: int = 0
    context_files_chars: int = 0
    tools_chars: int = 0
    system_chars: int = 0
    fallback_chars: int = 0

    @property
    def structured_chars(self) -> int:
        return self.history_chars + self.context_files_chars + self.tools_chars + self.system_chars


def estimate_tokens(breakdown: CharBreakdown) -> int:
    """Per-category rounded total, or the rounded raw length when no category has content."""
    if breakdown.structured_chars > 0:
        return (
            round_tokens(breakdown.history_chars)
            + round_tokens(breakdown.context_files_chars)
            + round_tokens(breakdown.tools_chars)
            + round_tokens(breakdown.system_chars)
        )
    return round_tokens(breakdown.fallback_chars)


@dataclass(frozen=True)
class ConversationEstimate:
    """Everything the estimator extracts from one conversation blob."""

    total_tokens: int
    messages: int
    cwd: str | None
    context_window: int | None
    model_id: str | None
    history_tokens: int
    context_files_tokens: int
    tools_tokens: int
    system_tokens: int
    compaction_markers: bool
    last_activity: datetime | None = None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def history_item_timestamp(item: Any) -> datetime | None:
    """Newest of the assistant/user ``timestamp`` or ``created_at`` values of one history item."""
    if not isinstance(item, dict):
        return None
    found: datetime | None = None
    for part in ("assistant", "user"):
        body = item.get(part)
        if not isinstance(body, dict):
            continue
        for key in ("timestamp", "created_at"):
            ts = parse_timestamp(body.get(key))
            if ts is not None and (found is None or ts > found):
                found = ts
    return found


def estimate_conversation(text: str) -> ConversationEstimate:
    """Break a conversation JSON string into per-category token estimates.

    Unparseable input counts every character as history.
    """
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        logger.debug("Conversation blob is not JSON, using raw length: %s", e)
        obj = None

    if not isinstance(obj, dict):
        chars = len(text or "")
        tokens = round_tokens(chars)
        return ConversationEstimate(
            total_tokens=tokens, messages=0, cwd=None, context_window=None, model_id=None,
            history_tokens=tokens, context_files_tokens=0, tools_tokens=0, system_tokens=0,
            compaction_markers=False,
        )

    context_window = None
    model_id = None
    model_info = obj.get("model_info")
    if isinstance(model_info, dict):
        context_window = _as_int(model_info.get("context_window_tokens"))
        if isinstance(model_info.get("model_id"), str):
            model_id = model_info["model_id"]

    cwd = None
    env = obj.get("env_context")
    if isinstance(env, dict) and isinstance(env.get("env_state"), dict):
        path = env["env_state"].get("current_working_directory")
        cwd = path if isinstance(path, str) else None

    history_chars = 0
    messages = 0
    markers = False
    last_activity: datetime | None = None
    history = obj.get("history")
    if isinstance(history, list):
        messages = len(history)
        for item in history:
            history_chars += deep_count(item)
            ts = history_item_timestamp(item)
            if ts is not None and (last_activity is None or ts > last_activity):
                last_activity = ts
            if isinstance(item, dict):
                if contains_compaction_marker(item.get("user")) or contains_compaction_marker(item.get("assistant")):
                    markers = True

    ctx_files_chars = 0
    cm = obj.get("context_manager")
    if isinstance(cm, dict):
        if isinstance(cm.get("context_files"), list):
            ctx_files_chars = deep_count(cm["context_files"])
        if contains_compaction_marker(cm):
            markers = True

    tools_chars = deep_count(obj["tool_manager"]) if "tool_manager" in obj else 0
    sys_chars = deep_count(obj["system_prompts"]) if "system_prompts" in obj else 0

    breakdown = CharBreakdown(
        history_chars=history_chars,
        context_files_chars=ctx_files_chars,
        tools_chars=tools_chars,
        system_chars=sys_chars,
        fallback_chars=len(text),
    )
    return ConversationEstimate(
        total_tokens=estimate_tokens(breakdown),
        messages=messages,
        cwd=cwd,
        context_window=context_window,
        model_id=model_id,
        history_tokens=round_tokens(history_chars),
        context_files_tokens=round_tokens(ctx_files_chars),
        tools_tokens=round_tokens(tools_chars),
        system_tokens=round_tokens(sys_chars),
        compaction_markers=markers,
        last_activity=last_activity,
    )
