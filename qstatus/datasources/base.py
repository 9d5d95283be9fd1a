"""The read contract every usage provider implements.

Required methods raise ``DataSourceError`` when the store cannot be read.
The extended methods (model/period totals, monthly messages) are optional:
the defaults return empty results, and callers treat empty as "not
supported" rather than as a failure.
"""

from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Callable

from qstatus.core.models import (
    GlobalByModel,
    GlobalMetrics,
    PeriodByModel,
    SessionDetails,
    SessionState,
    SessionSummary,
    UsageSnapshot,
    context_state,
    context_usage_percent,
)


class DataSourceError(Exception):
    """The underlying store is missing, locked or unreadable."""


class DataSource(abc.ABC):
    name: str = "data-source"

    @abc.abstractmethod
    async def open_if_needed(self) -> None:
        """Connect or load on first use; later calls are no-ops."""

    @abc.abstractmethod
    async def data_version(self) -> int:
        """Cheap counter that changes whenever the underlying data changes."""

    @abc.abstractmethod
    async def fetch_latest_usage(self) -> UsageSnapshot: ...

    @abc.abstractmethod
    async def fetch_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        group_by_folder: bool = False,
        active_only: bool = False,
    ) -> list[SessionSummary]:
        """A page of sessions, newest first."""

    @abc.abstractmethod
    async def fetch_session_detail(self, key: str) -> SessionDetails | None: ...

    @abc.abstractmethod
    async def session_count(self, active_only: bool = False) -> int: ...

    @abc.abstractmethod
    async def fetch_global_metrics(self, limit_for_top: int = 5) -> GlobalMetrics: ...

    # -- Optional extended methods --------------------------------------------

    async def fetch_global_totals_by_model(self) -> list[GlobalByModel]:
        return []

    async def fetch_period_tokens_by_model(self, now: datetime | None = None) -> list[PeriodByModel]:
        return []

    async def fetch_period_tokens_by_model_for_keys(
        self, keys: list[str], now: datetime | None = None
    ) -> list[PeriodByModel]:
        return []

    async def fetch_monthly_message_count(self, now: datetime | None = None) -> int:
        return 0

    async def close(self) -> None:
        """Release any held resources."""


def merge_by_folder(
    sessions: list[SessionSummary],
    context_window: int,
    state_for: Callable[[float], SessionState] = context_state,
) -> list[SessionSummary]:
    """Merge sessions sharing a working directory into one summary per folder.

    Tokens and messages are summed and usage is recomputed against
    ``context_window``. Newest activity first, then most tokens.
    """
    grouped: dict[str, list[SessionSummary]] = {}
    for s in sessions:
        grouped.setdefault(s.cwd or "", []).append(s)

    merged: list[SessionSummary] = []
    for cwd, items in grouped.items():
        tokens = sum(s.tokens_used for s in items)
        usage = context_usage_percent(tokens, context_window)
        activities = [s.last_activity for s in items if s.last_activity is not None]
        merged.append(
            SessionSummary(
                id=cwd or "(no-path)",
                cwd=cwd,
                tokens_used=tokens,
                context_window=context_window,
                usage_percent=usage,
                message_count=sum(s.message_count for s in items),
                last_activity=max(activities) if activities else None,
                state=state_for(usage),
                has_compaction_indicators=any(s.has_compaction_indicators for s in items),
                cost_usd=sum(s.cost_usd for s in items),
            )
        )
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    merged.sort(key=lambda s: (s.last_activity or oldest, s.tokens_used), reverse=True)
    return merged
