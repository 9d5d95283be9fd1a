"""Data models shared by the data sources, calculators and the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Any

DEFAULT_CLAUDE_MODEL = "claude-3-5-sonnet-20241022"


class SessionState(str, Enum):
    NORMAL = "normal"
    WARN = "warn"
    CRITICAL = "critical"
    COMPACTING = "compacting"
    COMPACTED = "compacted"
    ERROR = "error"


class HealthState(str, Enum):
    IDLE = "idle"
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (with or without fractional seconds) to aware UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_utc(value: datetime) -> str:
    """Format as ``2024-01-01T00:00:00Z``."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def context_usage_percent(tokens: int, context_window: int) -> float:
    """Usage of a context window, capped at 99.9 unless truly at or over the limit."""
    if context_window <= 0:
        return 0.0
    if tokens >= context_window:
        return 100.0
    return min(99.9, max(0.0, tokens / context_window * 100.0))


def context_state(usage_percent: float) -> SessionState:
    if usage_percent >= 100:
        return SessionState.CRITICAL
    if usage_percent >= 90:
        return SessionState.WARN
    return SessionState.NORMAL


# ── Snapshots & summaries ───────────────────────────────────────────────


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time read taken once per poll cycle."""

    timestamp: datetime
    tokens_used: int
    message_count: int
    conversation_id: str | None = None
    session_limit_override: int | None = None


@dataclass(frozen=True)
class SessionSummary:
    """One logical session as listed to the user."""

    id: str
    cwd: str | None
    tokens_used: int
    context_window: int
    usage_percent: float
    message_count: int
    last_activity: datetime | None
    state: SessionState
    internal_row_id: int | None = None
    has_compaction_indicators: bool = False
    model_id: str | None = None
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cwd": self.cwd,
            "tokens_used": self.tokens_used,
            "context_window": self.context_window,
            "usage_percent": round(self.usage_percent, 1),
            "message_count": self.message_count,
            "last_activity": iso_utc(self.last_activity) if self.last_activity else None,
            "state": self.state.value,
            "has_compaction_indicators": self.has_compaction_indicators,
            "model_id": self.model_id,
            "cost_usd": round(self.cost_usd, 4),
        }


@dataclass(frozen=True)
class SessionDetails:
    """A session summary plus its token breakdown by category."""

    summary: SessionSummary
    history_tokens: int
    context_files_tokens: int
    tools_tokens: int
    system_tokens: int

    @property
    def id(self) -> str:
        return self.summary.id

    @property
    def categories(self) -> tuple[int, int, int, int]:
        return (self.history_tokens, self.context_files_tokens, self.tools_tokens, self.system_tokens)


@dataclass(frozen=True)
class GlobalMetrics:
    total_sessions: int
    total_tokens: int
    sessions_near_limit: int
    top_heavy_sessions: list[SessionSummary] = field(default_factory=list)


@dataclass(frozen=True)
class GlobalByModel:
    model_id: str | None
    tokens: int
    messages: int


@dataclass(frozen=True)
class PeriodByModel:
    """Token, message and cost totals of one model over day/week/month/year."""

    model_id: str | None
    day_tokens: int = 0
    week_tokens: int = 0
    month_tokens: int = 0
    year_tokens: int = 0
    day_messages: int = 0
    week_messages: int = 0
    month_messages: int = 0
    day_cost: float = 0.0
    week_cost: float = 0.0
    month_cost: float = 0.0
    year_cost: float = 0.0


# ── Claude Code records ─────────────────────────────────────────────────


@dataclass(frozen=True)
class TokenCounts:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )


@dataclass(frozen=True)
class ClaudeTokenUsage:
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + (self.cache_creation_input_tokens or 0)
            + (self.cache_read_input_tokens or 0)
        )

    @property
    def context_tokens(self) -> int:
        """Tokens held in model memory for this turn (input + cache read + cache creation)."""
        return self.input_tokens + (self.cache_read_input_tokens or 0) + (self.cache_creation_input_tokens or 0)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaudeTokenUsage:
        return cls(
            input_tokens=_req_int(data, "input_tokens"),
            output_tokens=_req_int(data, "output_tokens"),
            cache_creation_input_tokens=_opt_int(data, "cache_creation_input_tokens"),
            cache_read_input_tokens=_opt_int(data, "cache_read_input_tokens"),
        )


@dataclass(frozen=True)
class ClaudeMessage:
    usage: ClaudeTokenUsage
    model: str | None = None
    id: str | None = None


@dataclass(frozen=True)
class ClaudeUsageEntry:
    """One usage line of a Claude Code JSONL transcript."""

    timestamp: str
    message: ClaudeMessage
    session_id: str | None = None
    cost_usd: float | None = None
    request_id: str | None = None
    cwd: str | None = None
    version: str | None = None
    is_api_error_message: bool | None = None

    @cached_property
    def date(self) -> datetime | None:
        return parse_timestamp(self.timestamp)

    @property
    def usage(self) -> ClaudeTokenUsage:
        return self.message.usage

    @property
    def dedup_key(self) -> str:
        return f"{self.message.id or ''}-{self.request_id or ''}-{self.timestamp}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaudeUsageEntry:
        """Build an entry from a decoded JSONL line.

        Raises ``ValueError`` (or ``KeyError``/``TypeError``) when the line is
        not a usage record: no timestamp, or no ``message.usage`` block.
        """
        if not isinstance(data, dict):
            raise TypeError("entry is not an object")
        timestamp = data["timestamp"]
        if not isinstance(timestamp, str):
            raise ValueError("timestamp is not a string")
        msg = data["message"]
        if not isinstance(msg, dict) or not isinstance(msg.get("usage"), dict):
            raise ValueError("message.usage missing")
        cost = data.get("costUSD")
        return cls(
            timestamp=timestamp,
            message=ClaudeMessage(
                usage=ClaudeTokenUsage.from_dict(msg["usage"]),
                model=_opt_str(msg, "model"),
                id=_opt_str(msg, "id"),
            ),
            session_id=_opt_str(data, "sessionId"),
            cost_usd=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
            request_id=_opt_str(data, "requestId"),
            cwd=_opt_str(data, "cwd"),
            version=_opt_str(data, "version"),
            is_api_error_message=data.get("isApiErrorMessage") if isinstance(data.get("isApiErrorMessage"), bool) else None,
        )


@dataclass(frozen=True)
class ClaudeSession:
    """All entries sharing one session key, with summed totals."""

    id: str
    start_time: datetime
    end_time: datetime
    entries: list[ClaudeUsageEntry]
    total_input_tokens: int
    total_output_tokens: int
    total_cache_creation_tokens: int
    total_cache_read_tokens: int
    total_cost: float
    total_cost_from_jsonl: float
    models: list[str]  # first-seen order
    cwd: str | None
    message_count: int

    @property
    def total_tokens(self) -> int:
        return (
            self.total_input_tokens
            + self.total_output_tokens
            + self.total_cache_creation_tokens
            + self.total_cache_read_tokens
        )

    @property
    def primary_model(self) -> str | None:
        return self.models[0] if self.models else None

    @property
    def context_tokens(self) -> int:
        return self.entries[-1].usage.context_tokens if self.entries else 0


@dataclass(frozen=True)
class SessionBlock:
    """A fixed-duration window of a session's entries, or a gap between two."""

    id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: datetime | None = None
    is_active: bool = False
    is_gap: bool = False
    entries: tuple[ClaudeUsageEntry, ...] = ()
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: float = 0.0
    models: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ActiveSessionData:
    """The most recently active Claude Code session, rebuilt every poll."""

    session_id: str
    start_time: datetime
    last_activity: datetime
    tokens: int  # context held after the latest turn
    cumulative_tokens: int
    cost: float
    is_active: bool
    message_count: int
    cwd: str | None
    model: str | None
    cost_from_jsonl: bool
    messages_per_hour: float
    tokens_per_hour: float
    cost_per_hour: float
    current_block: SessionBlock | None
    block_number: int
    total_blocks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time": iso_utc(self.start_time),
            "last_activity": iso_utc(self.last_activity),
            "tokens": self.tokens,
            "cumulative_tokens": self.cumulative_tokens,
            "cost": round(self.cost, 4),
            "is_active": self.is_active,
            "message_count": self.message_count,
            "cwd": self.cwd,
            "model": self.model,
            "messages_per_hour": round(self.messages_per_hour, 2),
            "tokens_per_hour": round(self.tokens_per_hour, 1),
            "cost_per_hour": round(self.cost_per_hour, 4),
            "block_id": self.current_block.id if self.current_block else None,
            "block_number": self.block_number,
            "total_blocks": self.total_blocks,
        }


def _req_int(data: dict[str, Any], key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} is not a number")
    return int(value)


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} is not a number")
    return int(value)


def _opt_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None
