"""Claude Code usage provider — reads the JSONL transcripts under ``projects/``.

Every usage line (``message.usage`` present) becomes a ``ClaudeUsageEntry``.
Entries are deduplicated on message id + request id + timestamp, grouped
into sessions by ``sessionId`` (or cwd + 5-hour bucket when missing), and the
whole session map is rebuilt from scratch whenever a transcript changes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from qstatus.config import CostMode
from qstatus.core.cost import ClaudeCostCalculator
from qstatus.core.models import (
    DEFAULT_CLAUDE_MODEL,
    ActiveSessionData,
    ClaudeSession,
    ClaudeUsageEntry,
    GlobalMetrics,
    PeriodByModel,
    SessionBlock,
    SessionDetails,
    SessionState,
    SessionSummary,
    UsageSnapshot,
)
from qstatus.core.percentage import session_percentage
from qstatus.core.session_blocks import (
    DEFAULT_SESSION_DURATION,
    calculate_burn_rate,
    current_block,
    identify_session_blocks,
)
from qstatus.datasources.base import DataSource, merge_by_folder

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000
RECENT_WINDOW = timedelta(hours=5)
ACTIVE_RECENCY = timedelta(minutes=30)
ACTIVE_SESSION_WINDOW = timedelta(hours=24)
NEAR_LIMIT_PERCENT = 80.0

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Discovery & parsing ─────────────────────────────────────────────────


def claude_roots(config_paths: Iterable[str] | None = None) -> list[Path]:
    """Claude data directories that contain a ``projects/`` folder.

    Explicit paths win, then ``CLAUDE_CONFIG_DIR`` (comma-separated), then
    ``~/.config/claude`` and ``~/.claude``.
    """
    def existing(candidates: Iterable[str | Path]) -> list[Path]:
        out = []
        for c in candidates:
            p = Path(str(c).strip()).expanduser()
            if str(c).strip() and (p / "projects").is_dir():
                out.append(p)
        return out

    roots = existing(config_paths or [])
    if roots:
        return roots
    env = os.environ.get("CLAUDE_CONFIG_DIR", "")
    if env:
        roots = existing(env.split(","))
        if roots:
            return roots
    home = Path.home()
    return existing([home / ".config" / "claude", home / ".claude"])


def find_jsonl_files(roots: Iterable[Path]) -> list[Path]:
    files: list[Path] = []
    for root in roots:
        projects = root / "projects"
        for path in projects.rglob("*.jsonl"):
            rel = path.relative_to(projects)
            if any(part.startswith(".") for part in rel.parts):
                continue
            if path.is_file():
                files.append(path)
    return sorted(files)


def parse_jsonl_file(file_path: Path) -> list[ClaudeUsageEntry]:
    """Usage entries of one transcript; malformed and non-usage lines are skipped."""
    entries: list[ClaudeUsageEntry] = []
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(ClaudeUsageEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.debug("Skipping line in %s: %s", file_path.name, e)
    except OSError as e:
        logger.warning("Could not read %s: %s", file_path, e)
    return entries


def deduplicate_entries(entries: Iterable[ClaudeUsageEntry]) -> list[ClaudeUsageEntry]:
    seen: set[str] = set()
    out: list[ClaudeUsageEntry] = []
    for entry in entries:
        key = entry.dedup_key
        if key in seen:
            continue
        seen.add(key)
        out.append(entry)
    return out


def session_key(entry: ClaudeUsageEntry) -> str:
    """``sessionId``, else ``<cwd>-block<N>`` for the 5-hour bucket since the epoch."""
    if entry.session_id:
        return entry.session_id
    date = entry.date
    if date is None:
        return f"unknown-{uuid.uuid5(uuid.NAMESPACE_OID, entry.dedup_key)}"
    hours = int(date.timestamp() // 3600)
    return f"{entry.cwd or 'unknown'}-block{hours // 5}"


def aggregate_into_sessions(
    entries: Iterable[ClaudeUsageEntry],
    cost_mode: CostMode = CostMode.AUTO,
) -> dict[str, ClaudeSession]:
    """Group entries by session key and sum their tokens and costs.

    Pure: the same entries always produce equal sessions.
    """
    by_key: dict[str, list[ClaudeUsageEntry]] = {}
    for entry in entries:
        by_key.setdefault(session_key(entry), []).append(entry)

    sessions: dict[str, ClaudeSession] = {}
    for key, group in by_key.items():
        ordered = sorted(group, key=lambda e: e.date or _EPOCH)
        inp = out = cache_create = cache_read = 0
        cost = cost_jsonl = 0.0
        models: list[str] = []
        for entry in ordered:
            usage = entry.usage
            inp += usage.input_tokens
            out += usage.output_tokens
            cache_create += usage.cache_creation_input_tokens or 0
            cache_read += usage.cache_read_input_tokens or 0
            if entry.cost_usd is not None:
                cost_jsonl += entry.cost_usd
            cost += ClaudeCostCalculator.calculate_cost(
                usage, entry.message.model or DEFAULT_CLAUDE_MODEL, cost_mode, entry.cost_usd
            )
            model = entry.message.model
            if model and model not in models:
                models.append(model)

        sessions[key] = ClaudeSession(
            id=key,
            start_time=ordered[0].date or _EPOCH,
            end_time=ordered[-1].date or _EPOCH,
            entries=ordered,
            total_input_tokens=inp,
            total_output_tokens=out,
            total_cache_creation_tokens=cache_create,
            total_cache_read_tokens=cache_read,
            total_cost=cost,
            total_cost_from_jsonl=cost_jsonl,
            models=models,
            cwd=next((e.cwd for e in ordered if e.cwd is not None), None),
            message_count=len(ordered),
        )
    return sessions


def jsonl_state(usage_percent: float) -> SessionState:
    if usage_percent < 70:
        return SessionState.NORMAL
    if usage_percent < 85:
        return SessionState.WARN
    if usage_percent < 100:
        return SessionState.CRITICAL
    return SessionState.ERROR


# ── Provider ────────────────────────────────────────────────────────────


class ClaudeCodeDataSource(DataSource):
    """Provider over Claude Code's local transcripts."""

    name = "claude-code"

    def __init__(
        self,
        config_paths: list[str] | None = None,
        cost_mode: CostMode = CostMode.AUTO,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        session_duration: timedelta = DEFAULT_SESSION_DURATION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config_paths = list(config_paths or [])
        self.cost_mode = cost_mode
        self.context_window = context_window
        self.session_duration = session_duration
        self.clock = clock
        self._sessions: dict[str, ClaudeSession] = {}
        self._mtimes: dict[str, float] = {}
        self._version = 0
        self._initialized = False
        self._lock = asyncio.Lock()

    # -- Loading -----------------------------------------------------------

    def _load_all(self) -> tuple[dict[str, ClaudeSession], dict[str, float], int]:
        files = find_jsonl_files(claude_roots(self.config_paths))
        entries: list[ClaudeUsageEntry] = []
        mtimes: dict[str, float] = {}
        for path in files:
            entries.extend(parse_jsonl_file(path))
            try:
                mtimes[str(path)] = path.stat().st_mtime
            except OSError as e:
                logger.debug("Could not stat %s: %s", path, e)
        sessions = aggregate_into_sessions(deduplicate_entries(entries), self.cost_mode)
        return sessions, mtimes, len(files)

    def _files_changed(self) -> bool:
        current = find_jsonl_files(claude_roots(self.config_paths))
        for path in current:
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            last = self._mtimes.get(str(path))
            if last is None or mtime > last:
                return True
        return any(not Path(p).exists() for p in self._mtimes)

    async def _reload(self) -> None:
        loop = asyncio.get_event_loop()
        sessions, mtimes, file_count = await loop.run_in_executor(None, self._load_all)
        self._sessions = sessions
        self._mtimes = mtimes
        logger.info("Loaded %d Claude sessions from %d files", len(sessions), file_count)

    async def open_if_needed(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            await self._reload()
            self._initialized = True

    async def data_version(self) -> int:
        await self.open_if_needed()
        async with self._lock:
            loop = asyncio.get_event_loop()
            if await loop.run_in_executor(None, self._files_changed):
                self._version += 1
                await self._reload()
        return self._version

    # -- Derived values ----------------------------------------------------

    def blocks_for(self, session: ClaudeSession, now: datetime | None = None) -> list[SessionBlock]:
        return identify_session_blocks(session.entries, self.session_duration, now or self.clock())

    def max_tokens_from_previous_blocks(self, now: datetime | None = None) -> int | None:
        """Largest total of any finished, non-gap block across all sessions."""
        now = now or self.clock()
        totals = [
            b.token_counts.total_tokens
            for s in self._sessions.values()
            for b in self.blocks_for(s, now)
            if not b.is_active and not b.is_gap
        ]
        return max(totals) if totals else None

    def _usage_percent(self, session: ClaudeSession, max_prev: int | None, now: datetime) -> float:
        block, _ = current_block(self.blocks_for(session, now))
        return session_percentage(session, block, max_prev)

    def _summary(self, session: ClaudeSession, max_prev: int | None, now: datetime) -> SessionSummary:
        usage = self._usage_percent(session, max_prev, now)
        return SessionSummary(
            id=session.id,
            cwd=session.cwd,
            tokens_used=session.context_tokens,
            context_window=self.context_window,
            usage_percent=usage,
            message_count=session.message_count,
            last_activity=session.end_time,
            state=jsonl_state(usage),
            model_id=session.primary_model,
            cost_usd=session.total_cost,
        )

    def _sorted_sessions(self) -> list[ClaudeSession]:
        return sorted(self._sessions.values(), key=lambda s: s.end_time, reverse=True)

    def get_session(self, key: str) -> ClaudeSession | None:
        return self._sessions.get(key)

    # -- DataSource --------------------------------------------------------

    async def fetch_latest_usage(self) -> UsageSnapshot:
        await self.open_if_needed()
        if not self._sessions:
            return UsageSnapshot(timestamp=self.clock(), tokens_used=0, message_count=0)
        latest = max(self._sessions.values(), key=lambda s: s.end_time)
        return UsageSnapshot(
            timestamp=latest.end_time,
            tokens_used=latest.total_tokens,
            message_count=latest.message_count,
            conversation_id=latest.id,
        )

    async def fetch_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        group_by_folder: bool = False,
        active_only: bool = False,
    ) -> list[SessionSummary]:
        await self.open_if_needed()
        now = self.clock()
        max_prev = self.max_tokens_from_previous_blocks(now)
        page = self._sorted_sessions()[offset: offset + limit]
        if active_only:
            page = [s for s in page if s.end_time > now - ACTIVE_SESSION_WINDOW]
        summaries = [self._summary(s, max_prev, now) for s in page]
        if group_by_folder:
            return merge_by_folder(summaries, self.context_window, jsonl_state)
        return summaries

    async def fetch_session_detail(self, key: str) -> SessionDetails | None:
        await self.open_if_needed()
        session = self._sessions.get(key)
        if session is None:
            return None
        now = self.clock()
        summary = self._summary(session, self.max_tokens_from_previous_blocks(now), now)
        # Transcripts carry no per-category split; input is history, cache is system.
        return SessionDetails(
            summary=summary,
            history_tokens=session.total_input_tokens,
            context_files_tokens=0,
            tools_tokens=0,
            system_tokens=session.total_cache_read_tokens + session.total_cache_creation_tokens,
        )

    async def session_count(self, active_only: bool = False) -> int:
        await self.open_if_needed()
        if active_only:
            cutoff = self.clock() - ACTIVE_SESSION_WINDOW
            return sum(1 for s in self._sessions.values() if s.end_time > cutoff)
        return len(self._sessions)

    async def fetch_global_metrics(self, limit_for_top: int = 5) -> GlobalMetrics:
        await self.open_if_needed()
        now = self.clock()
        max_prev = self.max_tokens_from_previous_blocks(now)
        near = sum(
            1 for s in self._sessions.values() if self._usage_percent(s, max_prev, now) > NEAR_LIMIT_PERCENT
        )
        heaviest = sorted(self._sessions.values(), key=lambda s: s.total_tokens, reverse=True)
        return GlobalMetrics(
            total_sessions=len(self._sessions),
            total_tokens=sum(s.total_tokens for s in self._sessions.values()),
            sessions_near_limit=near,
            top_heavy_sessions=[self._summary(s, max_prev, now) for s in heaviest[:limit_for_top]],
        )

    # -- Extended ----------------------------------------------------------

    async def fetch_period_tokens_by_model(self, now: datetime | None = None) -> list[PeriodByModel]:
        """Per-model totals with each entry counted in the periods its timestamp falls in.

        day: since local midnight; week and month: rolling 7 and 30 days;
        year: since January 1st.
        """
        await self.open_if_needed()
        now = now or self.clock()
        local = now.astimezone()
        start_day = local.replace(hour=0, minute=0, second=0, microsecond=0)
        start_week = now - timedelta(days=7)
        start_month = now - timedelta(days=30)
        start_year = start_day.replace(month=1, day=1)

        per_model: dict[str, dict[str, Any]] = {}
        for session in self._sessions.values():
            model = session.primary_model or DEFAULT_CLAUDE_MODEL
            acc: dict[str, Any] = dict.fromkeys(("dt", "wt", "mt", "yt", "dm", "wm", "mm"), 0)
            acc.update(dict.fromkeys(("dc", "wc", "mc", "yc"), 0.0))
            for entry in session.entries:
                date = entry.date
                if date is None:
                    continue
                tokens = entry.usage.total_tokens
                cost = ClaudeCostCalculator.calculate_cost(
                    entry.usage, entry.message.model or DEFAULT_CLAUDE_MODEL, self.cost_mode, entry.cost_usd
                )
                if date >= start_day:
                    acc["dt"] += tokens
                    acc["dm"] += 1
                    acc["dc"] += cost
                if date >= start_week:
                    acc["wt"] += tokens
                    acc["wm"] += 1
                    acc["wc"] += cost
                if date >= start_month:
                    acc["mt"] += tokens
                    acc["mm"] += 1
                    acc["mc"] += cost
                if date >= start_year:
                    acc["yt"] += tokens
                    acc["yc"] += cost
            if acc["yt"] == 0:
                continue
            total = per_model.setdefault(model, dict.fromkeys(acc, 0))
            for k, v in acc.items():
                total[k] += v

        return [
            PeriodByModel(
                model_id=model,
                day_tokens=a["dt"], week_tokens=a["wt"], month_tokens=a["mt"], year_tokens=a["yt"],
                day_messages=a["dm"], week_messages=a["wm"], month_messages=a["mm"],
                day_cost=a["dc"], week_cost=a["wc"], month_cost=a["mc"], year_cost=a["yc"],
            )
            for model, a in per_model.items()
        ]

    async def fetch_monthly_message_count(self, now: datetime | None = None) -> int:
        """Entries in the last 30 days."""
        await self.open_if_needed()
        cutoff = (now or self.clock()) - timedelta(days=30)
        return sum(
            1
            for s in self._sessions.values()
            for e in s.entries
            if e.date is not None and e.date >= cutoff
        )

    # -- Active session ----------------------------------------------------

    async def fetch_active_session(self, now: datetime | None = None) -> ActiveSessionData | None:
        """The most recent session with activity in the last 5 hours, if any."""
        await self.open_if_needed()
        now = now or self.clock()
        recent = sorted(
            (s for s in self._sessions.values() if s.end_time >= now - RECENT_WINDOW),
            key=lambda s: s.end_time,
            reverse=True,
        )
        if not recent:
            return None
        session = recent[0]
        cumulative = sum(e.usage.total_tokens for e in session.entries)

        blocks = self.blocks_for(session, now)
        block, block_number = current_block(blocks)
        rate = calculate_burn_rate(block) if block is not None else None
        if block is not None and rate is not None:
            tokens_per_hour = rate.tokens_per_minute * 60.0
            cost_per_hour = rate.cost_per_hour
            span = (block.actual_end_time - block.start_time).total_seconds() if block.actual_end_time else 0.0
            messages_per_hour = len(block.entries) / max(0.01, span / 3600.0)
        else:
            hours = max(0.01, (session.end_time - session.start_time).total_seconds() / 3600.0)
            messages_per_hour = session.message_count / hours
            tokens_per_hour = cumulative / hours
            cost_per_hour = session.total_cost / hours

        return ActiveSessionData(
            session_id=session.id,
            start_time=session.start_time,
            last_activity=session.end_time,
            tokens=session.context_tokens,
            cumulative_tokens=cumulative,
            cost=sum(s.total_cost for s in recent),
            is_active=session.end_time >= now - ACTIVE_RECENCY,
            message_count=session.message_count,
            cwd=session.cwd,
            model=session.primary_model,
            cost_from_jsonl=any(s.total_cost_from_jsonl > 0 for s in recent),
            messages_per_hour=messages_per_hour,
            tokens_per_hour=tokens_per_hour,
            cost_per_hour=cost_per_hour,
            current_block=block,
            block_number=block_number,
            total_blocks=len(blocks),
        )
