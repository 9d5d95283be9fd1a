"""Polling coordinator — turns data-source reads into one published view model.

Each cycle asks the provider for its cheap data version first. An unchanged
version only widens the poll interval; a changed one triggers the full
refresh (snapshot, sessions, global and period totals, active Claude
session). The view model is rebuilt off to the side and swapped in whole,
so readers never see a half-updated state. Any failure inside a cycle is
logged and the previous view model stays in place.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from qstatus.config import DataSourceType, Settings
from qstatus.core.cost import estimate_usd, format_usd
from qstatus.core.metrics import health_state, sparkline, time_to_limit, tokens_per_minute, usage_percent
from qstatus.core.models import (
    ActiveSessionData,
    GlobalMetrics,
    HealthState,
    PeriodByModel,
    SessionDetails,
    SessionState,
    SessionSummary,
    UsageSnapshot,
    context_state,
    context_usage_percent,
)
from qstatus.core.percentage import critical_metric, critical_percentage
from qstatus.datasources.base import DataSource
from qstatus.datasources.jsonl import ClaudeCodeDataSource
from qstatus.notifications import ThresholdNotifier, WebhookSink

logger = logging.getLogger(__name__)

HISTORY_CAP = 360
PAGE_SIZE = 50
TOP_SESSIONS = 5
CATEGORY_PRELOAD = 10
DETAIL_CONCURRENCY = 4
EMA_ALPHA = 0.3
COMPACTION_DISPLAY = timedelta(seconds=10)
COMPACTION_USAGE_DROP = 10.0

SettingsProvider = Callable[[], Settings]
UpdateCallback = Callable[["UsageViewModel"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PeriodTotals:
    day_tokens: int = 0
    week_tokens: int = 0
    month_tokens: int = 0
    year_tokens: int = 0
    day_cost: float = 0.0
    week_cost: float = 0.0
    month_cost: float = 0.0
    year_cost: float = 0.0
    day_messages: int = 0
    week_messages: int = 0
    month_messages: int = 0

    @classmethod
    def from_rows(cls, rows: list[PeriodByModel]) -> PeriodTotals:
        return cls(
            day_tokens=sum(r.day_tokens for r in rows),
            week_tokens=sum(r.week_tokens for r in rows),
            month_tokens=sum(r.month_tokens for r in rows),
            year_tokens=sum(r.year_tokens for r in rows),
            day_cost=sum(r.day_cost for r in rows),
            week_cost=sum(r.week_cost for r in rows),
            month_cost=sum(r.month_cost for r in rows),
            year_cost=sum(r.year_cost for r in rows),
            day_messages=sum(r.day_messages for r in rows),
            week_messages=sum(r.week_messages for r in rows),
            month_messages=sum(r.month_messages for r in rows),
        )


@dataclass
class UsageViewModel:
    """Everything the presentation layer reads, replaced whole on each refresh."""

    data_source_name: str = ""
    last_updated: datetime | None = None

    # Headline
    tokens_used: int = 0
    session_limit: int = 0
    tokens_remaining: int = 0
    percent: float = 0.0
    health: HealthState = HealthState.IDLE
    tokens_per_minute: float = 0.0
    time_to_limit_seconds: float | None = None
    sparkline: list[float] = field(default_factory=list)
    cost_estimate: float = 0.0
    cost_display: str = "$0.00"

    # Sessions
    sessions: list[SessionSummary] = field(default_factory=list)
    session_count: int = 0
    categories: dict[str, tuple[int, int, int, int]] = field(default_factory=dict)
    selected_session: SessionDetails | None = None

    # Paged "all sessions" view
    page: int = 0
    page_sessions: list[SessionSummary] = field(default_factory=list)
    page_total: int = 0
    page_periods: PeriodTotals = field(default_factory=PeriodTotals)

    # Global
    global_tokens: int = 0
    global_messages: int = 0
    global_cost: float = 0.0
    global_sessions: int = 0
    global_near_limit: int = 0
    global_top: list[SessionSummary] = field(default_factory=list)
    global_tokens_per_minute_ema: float = 0.0

    # Periods
    periods: PeriodTotals = field(default_factory=PeriodTotals)
    weighted_rate_per_1k: float = 0.0
    monthly_messages: int = 0

    # Claude Code
    active_session: ActiveSessionData | None = None
    max_tokens_from_previous_blocks: int | None = None
    critical_percent: float = 0.0
    critical_metric_name: str = "Cost"

    @property
    def headline_percent(self) -> float:
        if self.data_source_name == DataSourceType.CLAUDE_CODE.value:
            return self.critical_percent
        return self.percent


class UpdateCoordinator:
    """Adaptive poll loop over one swappable data source."""

    def __init__(
        self,
        source: DataSource,
        settings_provider: SettingsProvider,
        on_update: UpdateCallback | None = None,
        notifier: ThresholdNotifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.settings_provider = settings_provider
        self.on_update = on_update
        self.clock = clock
        settings = settings_provider()
        self.notifier = notifier or ThresholdNotifier(
            sink=WebhookSink(settings.notification_webhook_url),
            warn=settings.warn_threshold,
            high=settings.high_threshold,
            critical=settings.critical_threshold,
        )
        self.view = UsageViewModel(data_source_name=source.name)
        self.history: list[UsageSnapshot] = []
        self.stable_cycles = 0
        self.last_data_version = -1
        self._previous: dict[str, tuple[int, int, float]] = {}
        self._compacting_until: dict[str, datetime] = {}
        self._last_global: tuple[datetime, int] | None = None
        self._ema: float | None = None
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._running = False

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Coordinator started (source=%s)", self.source.name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Coordinator stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def current_interval(self, settings: Settings | None = None) -> float:
        """``min(max, base + min(bonus_cap, stable_cycles))`` seconds."""
        settings = settings or self.settings_provider()
        base = max(1, settings.polling_interval_seconds)
        bonus = min(settings.stability_bonus_cap, self.stable_cycles)
        return float(min(settings.max_polling_interval_seconds, base + bonus))

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.current_interval())

    async def poll_once(self, force: bool = False) -> bool:
        """Run one cycle; returns True when a new view model was published."""
        async with self._cycle_lock:
            settings = self.settings_provider()
            try:
                version = await self.source.data_version()
                if not force and version == self.last_data_version:
                    self.stable_cycles += 1
                    return False
                self.stable_cycles = 0
                await self._refresh(settings)
                self.last_data_version = version
            except Exception as exc:
                logger.warning("Poll cycle failed (%s): %s", self.source.name, exc)
                return False
        if self.on_update is not None:
            self.on_update(self.view)
        if settings.notifications_enabled:
            await self.notifier.check(round(self.view.headline_percent))
        return True

    async def manual_refresh(self) -> bool:
        return await self.poll_once(force=True)

    async def restart(self, new_source: DataSource) -> None:
        """Stop polling, drop all cached state, swap providers and refresh once."""
        await self.stop()
        old = self.source
        # Wait out any manual refresh still reading from the old source.
        async with self._cycle_lock:
            self.history = []
            self._previous = {}
            self._compacting_until = {}
            self._last_global = None
            self._ema = None
            self.stable_cycles = 0
            self.last_data_version = -1
            self.notifier.reset()
            self.source = new_source
            self.view = UsageViewModel(data_source_name=new_source.name)
        if old is not new_source:
            await old.close()
        logger.info("Switched data source %s -> %s", old.name, new_source.name)
        await self.start()
        await self.manual_refresh()

    # -- Refresh -------------------------------------------------------------

    async def _refresh(self, settings: Settings) -> None:
        now = self.clock()
        prev = self.view
        vm = UsageViewModel(
            data_source_name=self.source.name,
            last_updated=now,
            selected_session=prev.selected_session,
            page=prev.page,
            page_sessions=prev.page_sessions,
            page_total=prev.page_total,
            page_periods=prev.page_periods,
        )

        # Cycle state is only committed together with the view.
        snapshot = await self.source.fetch_latest_usage()
        history = [*self.history, snapshot][-HISTORY_CAP:]
        self._fill_headline(vm, snapshot, history, settings)

        sessions = await self.source.fetch_sessions(limit=PAGE_SIZE, group_by_folder=settings.group_by_folder)
        sessions = [self._remap(s, settings) for s in sessions]
        vm.sessions, previous, compacting = self._apply_compaction(sessions, now)
        vm.session_count = await self.source.session_count()
        vm.categories = await self._preload_categories(vm.sessions[:CATEGORY_PRELOAD])

        metrics = await self.source.fetch_global_metrics(limit_for_top=TOP_SESSIONS)
        last_global, ema = await self._fill_global(vm, metrics, settings, now)

        period_rows = await self.source.fetch_period_tokens_by_model(now)
        vm.periods = PeriodTotals.from_rows(period_rows)
        vm.weighted_rate_per_1k = self._weighted_rate(period_rows, settings)
        vm.monthly_messages = await self.source.fetch_monthly_message_count(now)

        if isinstance(self.source, ClaudeCodeDataSource):
            vm.active_session = await self.source.fetch_active_session(now)
            vm.max_tokens_from_previous_blocks = self.source.max_tokens_from_previous_blocks(now)
            vm.critical_percent = critical_percentage(
                vm.active_session,
                vm.max_tokens_from_previous_blocks,
                monthly_cost=vm.periods.month_cost,
                monthly_limit=settings.plan_cost_limit,
            )
            vm.critical_metric_name, _ = critical_metric(vm.active_session, vm.max_tokens_from_previous_blocks)

        self.history = history
        self._previous, self._compacting_until = previous, compacting
        self._last_global, self._ema = last_global, ema
        self.view = vm

    def _fill_headline(
        self, vm: UsageViewModel, snapshot: UsageSnapshot, history: list[UsageSnapshot], settings: Settings
    ) -> None:
        limit = snapshot.session_limit_override or settings.session_token_limit
        remaining = max(0, limit - snapshot.tokens_used)
        rate = tokens_per_minute(history)
        vm.tokens_used = snapshot.tokens_used
        vm.session_limit = limit
        vm.tokens_remaining = remaining
        vm.percent = usage_percent(snapshot.tokens_used, limit)
        vm.health = health_state(vm.percent)
        vm.tokens_per_minute = rate
        vm.time_to_limit_seconds = time_to_limit(remaining, rate)
        vm.sparkline = sparkline(history)
        vm.cost_estimate = estimate_usd(snapshot.tokens_used, settings.cost_rate_per_1k_tokens_usd)
        vm.cost_display = format_usd(vm.cost_estimate)

    def _remap(self, summary: SessionSummary, settings: Settings) -> SessionSummary:
        """Amazon Q rows are shown against the default context window and priced per model."""
        if isinstance(self.source, ClaudeCodeDataSource):
            return summary
        window = settings.default_context_window_tokens
        usage = context_usage_percent(summary.tokens_used, window)
        return dataclasses.replace(
            summary,
            context_window=window,
            usage_percent=usage,
            state=context_state(usage),
            cost_usd=estimate_usd(summary.tokens_used, settings.rate_for_model(summary.model_id)),
        )

    def _apply_compaction(
        self, sessions: list[SessionSummary], now: datetime
    ) -> tuple[list[SessionSummary], dict[str, tuple[int, int, float]], dict[str, datetime]]:
        """Flag sessions whose tokens or usage dropped while messages did not.

        Returns the flagged sessions plus the updated baselines and display deadlines.
        """
        previous = dict(self._previous)
        compacting = dict(self._compacting_until)
        out = []
        for s in sessions:
            prev = previous.get(s.id)
            if prev is not None:
                prev_tokens, prev_messages, prev_usage = prev
                usage_drop = prev_usage - s.usage_percent
                tokens_drop = prev_tokens - s.tokens_used
                if (
                    usage_drop >= COMPACTION_USAGE_DROP or tokens_drop > s.context_window // 20
                ) and s.message_count >= prev_messages:
                    logger.info("Session %s looks compacted (%d -> %d tokens)", s.id, prev_tokens, s.tokens_used)
                    compacting[s.id] = now + COMPACTION_DISPLAY
            previous[s.id] = (s.tokens_used, s.message_count, s.usage_percent)

            until = compacting.get(s.id)
            if until is not None and now < until:
                s = dataclasses.replace(s, state=SessionState.COMPACTING, has_compaction_indicators=True)
            elif until is not None:
                del compacting[s.id]
            out.append(s)
        return out, previous, compacting

    async def _fetch_details(self, keys: list[str]) -> dict[str, SessionDetails]:
        sem = asyncio.Semaphore(DETAIL_CONCURRENCY)

        async def one(key: str) -> SessionDetails | None:
            async with sem:
                return await self.source.fetch_session_detail(key)

        results = await asyncio.gather(*(one(k) for k in keys))
        return {d.id: d for d in results if d is not None}

    async def _preload_categories(self, sessions: list[SessionSummary]) -> dict[str, tuple[int, int, int, int]]:
        details = await self._fetch_details([s.id for s in sessions])
        return {key: d.categories for key, d in details.items()}

    async def _fill_global(
        self, vm: UsageViewModel, metrics: GlobalMetrics, settings: Settings, now: datetime
    ) -> tuple[tuple[datetime, int], float | None]:
        """Fill the global figures; returns the new EMA baseline and value."""
        by_model = await self.source.fetch_global_totals_by_model()
        if by_model:
            vm.global_tokens = sum(m.tokens for m in by_model)
            vm.global_messages = sum(m.messages for m in by_model)
            vm.global_cost = sum(estimate_usd(m.tokens, settings.rate_for_model(m.model_id)) for m in by_model)
        else:
            vm.global_tokens = metrics.total_tokens
            vm.global_cost = estimate_usd(metrics.total_tokens, settings.cost_rate_per_1k_tokens_usd)
        vm.global_sessions = metrics.total_sessions
        vm.global_near_limit = metrics.sessions_near_limit

        details = await self._fetch_details([s.id for s in metrics.top_heavy_sessions])
        vm.global_top = [
            self._remap(details[s.id].summary if s.id in details else s, settings)
            for s in metrics.top_heavy_sessions
        ]

        ema = self._ema
        if self._last_global is not None:
            last_time, last_tokens = self._last_global
            minutes = (now - last_time).total_seconds() / 60.0
            if minutes > 0:
                rate = max(0, vm.global_tokens - last_tokens) / minutes
                ema = rate if ema is None else EMA_ALPHA * rate + (1 - EMA_ALPHA) * ema
        vm.global_tokens_per_minute_ema = ema or 0.0
        return (now, vm.global_tokens), ema

    @staticmethod
    def _weighted_rate(rows: list[PeriodByModel], settings: Settings) -> float:
        """Per-1k rate weighted by today's tokens per model; flat rate when idle."""
        day_tokens = sum(r.day_tokens for r in rows)
        if day_tokens <= 0:
            return settings.cost_rate_per_1k_tokens_usd
        return sum(settings.rate_for_model(r.model_id) * r.day_tokens for r in rows) / day_tokens

    # -- On-demand views -----------------------------------------------------

    async def load_all_sessions(self, page: int = 0) -> list[SessionSummary]:
        """One ungrouped page of every session, with its own period totals."""
        settings = self.settings_provider()
        page = max(0, page)
        sessions = await self.source.fetch_sessions(limit=PAGE_SIZE, offset=page * PAGE_SIZE)
        sessions = [self._remap(s, settings) for s in sessions]
        total = await self.source.session_count()
        rows = await self.source.fetch_period_tokens_by_model_for_keys([s.id for s in sessions], self.clock())
        self.view = dataclasses.replace(
            self.view,
            page=page,
            page_sessions=sessions,
            page_total=total,
            page_periods=PeriodTotals.from_rows(rows),
        )
        return sessions

    async def select_session(self, key: str) -> SessionDetails | None:
        detail = await self.source.fetch_session_detail(key)
        self.view = dataclasses.replace(self.view, selected_session=detail)
        return detail
