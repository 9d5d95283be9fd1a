"""Amazon Q conversation store — read-only SQLite provider.

The Q CLI keeps one row per conversation in a key/value table whose value is
a JSON document (history, context manager, tools, system prompts, model
info). This provider never writes: connections are opened ``mode=ro`` with a
zero busy timeout so a locked database fails the read immediately instead of
waiting behind the CLI's own writes.

Q also creates a ``history`` table but never fills it, so activity windows
and monthly message counts are approximated from the conversations table.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import quote

from qstatus.core.cost import estimate_usd
from qstatus.core.models import (
    GlobalByModel,
    GlobalMetrics,
    PeriodByModel,
    SessionDetails,
    SessionSummary,
    UsageSnapshot,
    context_state,
    context_usage_percent,
)
from qstatus.core.token_estimator import (
    ConversationEstimate,
    deep_count,
    estimate_conversation,
    history_item_timestamp,
    round_tokens,
)
from qstatus.datasources.base import DataSource, DataSourceError, merge_by_folder

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONTEXT_WINDOW = 175_000
DEFAULT_RATE_PER_1K = 0.0025
MAX_READERS = 4
ACTIVE_WINDOW = timedelta(days=7)
NEAR_LIMIT_RATIO = 0.9

_PERIOD_KEYS = ("dt", "wt", "mt", "yt", "dm", "wm", "mm")


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass
class SchemaMap:
    conversations_table: str = "conversations"
    key_column: str = "key"
    value_column: str = "value"


class ReaderPool:
    """Up to ``max_readers`` read-only connections, handed out one per read."""

    def __init__(self, db_path: Path, max_readers: int = MAX_READERS) -> None:
        self.db_path = db_path
        self.max_readers = max_readers
        self._idle: queue.SimpleQueue[sqlite3.Connection] = queue.SimpleQueue()
        self._slots = threading.BoundedSemaphore(max_readers)
        self._all: list[sqlite3.Connection] = []
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        uri = f"file:{quote(str(self.db_path))}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with self._lock:
            self._all.append(conn)
        return conn

    def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._slots:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self.connect()
            try:
                return fn(conn)
            finally:
                self._idle.put(conn)

    def close(self) -> None:
        with self._lock:
            conns, self._all = self._all, []
        for conn in conns:
            conn.close()


class QDBDataSource(DataSource):
    """Provider backed by the Amazon Q ``data.sqlite3`` file."""

    name = "amazon-q"

    def __init__(
        self,
        db_path: Path | str,
        default_context_window: int = DEFAULT_CONTEXT_WINDOW,
        cost_rate_per_1k: float = DEFAULT_RATE_PER_1K,
        model_pricing: dict[str, float] | None = None,
        max_readers: int = MAX_READERS,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.default_context_window = default_context_window
        self.cost_rate_per_1k = cost_rate_per_1k
        self.model_pricing = dict(model_pricing or {})
        self.max_readers = max_readers
        self.schema = SchemaMap()
        self._pool: ReaderPool | None = None
        # data_version is only comparable on one connection, so it gets its own.
        self._version_conn: sqlite3.Connection | None = None
        self._version_lock = threading.Lock()
        self._open_lock = asyncio.Lock()

    # -- Plumbing ----------------------------------------------------------

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.Error as e:
            raise DataSourceError(f"{self.db_path}: {e}") from e

    async def _read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        await self.open_if_needed()
        pool = self._pool
        if pool is None:
            raise DataSourceError("database is not open")
        return await self._run(lambda: pool.read(fn))

    async def open_if_needed(self) -> None:
        if self._pool is not None:
            return
        async with self._open_lock:
            if self._pool is not None:
                return
            if not self.db_path.exists():
                raise DataSourceError(f"Amazon Q database not found at {self.db_path}")
            pool = ReaderPool(self.db_path, self.max_readers)
            try:
                self.schema = await self._run(lambda: pool.read(self._discover_schema))
                self._version_conn = await self._run(pool.connect)
            except DataSourceError:
                pool.close()
                raise
            self._pool = pool
            logger.info(
                "Opened %s (table=%s key=%s value=%s)",
                self.db_path,
                self.schema.conversations_table,
                self.schema.key_column,
                self.schema.value_column,
            )

    async def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
        self._pool = None
        self._version_conn = None

    @staticmethod
    def _discover_schema(conn: sqlite3.Connection) -> SchemaMap:
        """Best-guess table/column names; anything not found keeps the default."""
        schema = SchemaMap()
        tables = [r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")]
        table = next((t for t in tables if t.lower() == "conversations"), None)
        if table is None:
            table = next((t for t in tables if "conversation" in t.lower()), None)
        if table is None:
            logger.warning("No conversations table found, assuming %r", schema.conversations_table)
            return schema
        schema.conversations_table = table
        columns = [r["name"] for r in conn.execute(f"PRAGMA table_info({_quote_ident(table)})")]
        schema.key_column = next((c for c in columns if c.lower() == "key"), schema.key_column)
        schema.value_column = next((c for c in columns if c.lower() == "value"), schema.value_column)
        return schema

    def _select(self, extra: str = "") -> str:
        s = self.schema
        return (
            f"SELECT rowid AS internal_rowid, {_quote_ident(s.key_column)} AS k, "
            f"{_quote_ident(s.value_column)} AS v FROM {_quote_ident(s.conversations_table)} {extra}"
        )

    # Built at query time: the schema is only known once the pool is open.
    def _key_filter(self, condition: str) -> str:
        return f"WHERE {_quote_ident(self.schema.key_column)} {condition}"

    def _all_rows(self, conn: sqlite3.Connection) -> list[sqlite3.Row]:
        return conn.execute(self._select()).fetchall()

    def _count_rows(self, conn: sqlite3.Connection) -> int:
        table = _quote_ident(self.schema.conversations_table)
        return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

    def _summary(
        self,
        key: str,
        est: ConversationEstimate,
        row_id: int | None,
        now: datetime,
    ) -> SessionSummary:
        ctx = est.context_window or self.default_context_window
        usage = context_usage_percent(est.total_tokens, ctx)
        return SessionSummary(
            id=key,
            cwd=est.cwd,
            tokens_used=est.total_tokens,
            context_window=ctx,
            usage_percent=usage,
            message_count=est.messages,
            last_activity=est.last_activity or now,
            state=context_state(usage),
            internal_row_id=row_id,
            has_compaction_indicators=est.compaction_markers,
            model_id=est.model_id,
            cost_usd=0.0,
        )

    def _rate(self, model_id: str | None) -> float:
        return self.model_pricing.get(model_id or "", self.cost_rate_per_1k)

    # -- DataSource --------------------------------------------------------

    async def data_version(self) -> int:
        await self.open_if_needed()

        def read_version() -> int:
            with self._version_lock:
                if self._version_conn is None:
                    raise DataSourceError("database is not open")
                row = self._version_conn.execute("PRAGMA data_version").fetchone()
                return int(row[0]) if row else 0

        return await self._run(read_version)

    async def fetch_latest_usage(self) -> UsageSnapshot:
        row = await self._read(lambda c: c.execute(self._select("ORDER BY rowid DESC LIMIT 1")).fetchone())
        now = datetime.now(timezone.utc)
        if row is None or row["v"] is None:
            return UsageSnapshot(timestamp=now, tokens_used=0, message_count=0)
        est = estimate_conversation(str(row["v"]))
        return UsageSnapshot(
            timestamp=now,
            tokens_used=est.total_tokens,
            message_count=est.messages,
            conversation_id=row["k"],
        )

    async def fetch_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        group_by_folder: bool = False,
        active_only: bool = False,
    ) -> list[SessionSummary]:
        rows = await self._read(
            lambda c: c.execute(self._select("ORDER BY rowid DESC LIMIT ? OFFSET ?"), (limit, offset)).fetchall()
        )
        now = datetime.now(timezone.utc)
        results = [
            self._summary(str(r["k"]), estimate_conversation(str(r["v"] or "")), r["internal_rowid"], now)
            for r in rows
            if r["k"] is not None
        ]
        if active_only:
            cutoff = now - ACTIVE_WINDOW
            results = [s for s in results if (s.last_activity or now) >= cutoff]
        if group_by_folder:
            return merge_by_folder(results, self.default_context_window)
        return results

    async def fetch_session_detail(self, key: str) -> SessionDetails | None:
        row = await self._read(lambda c: c.execute(self._select(self._key_filter("= ?")), (key,)).fetchone())
        if row is None or row["v"] is None:
            return None
        est = estimate_conversation(str(row["v"]))
        summary = self._summary(key, est, row["internal_rowid"], datetime.now(timezone.utc))
        return SessionDetails(
            summary=summary,
            history_tokens=est.history_tokens,
            context_files_tokens=est.context_files_tokens,
            tools_tokens=est.tools_tokens,
            system_tokens=est.system_tokens,
        )

    async def session_count(self, active_only: bool = False) -> int:
        if not active_only:
            return await self._read(self._count_rows)
        rows = await self._read(self._all_rows)
        now = datetime.now(timezone.utc)
        cutoff = now - ACTIVE_WINDOW
        count = 0
        for r in rows:
            est = estimate_conversation(str(r["v"] or ""))
            if (est.last_activity or now) >= cutoff:
                count += 1
        return count

    async def fetch_global_metrics(self, limit_for_top: int = 5) -> GlobalMetrics:
        rows = await self._read(self._all_rows)
        total_tokens = 0
        near = 0
        ranked: list[tuple[int, str, int]] = []
        for r in rows:
            if r["k"] is None:
                continue
            est = estimate_conversation(str(r["v"] or ""))
            ctx = est.context_window or self.default_context_window
            total_tokens += est.total_tokens
            if est.total_tokens >= ctx * NEAR_LIMIT_RATIO:
                near += 1
            ranked.append((est.total_tokens, str(r["k"]), ctx))

        ranked.sort(key=lambda t: t[0], reverse=True)
        top = []
        for tokens, key, ctx in ranked[: max(0, limit_for_top)]:
            usage = context_usage_percent(tokens, ctx)
            top.append(
                SessionSummary(
                    id=key,
                    cwd=None,
                    tokens_used=tokens,
                    context_window=ctx,
                    usage_percent=usage,
                    message_count=0,
                    last_activity=None,
                    state=context_state(usage),
                )
            )
        return GlobalMetrics(
            total_sessions=len(rows),
            total_tokens=total_tokens,
            sessions_near_limit=near,
            top_heavy_sessions=top,
        )

    # -- Extended ----------------------------------------------------------

    async def fetch_global_totals_by_model(self) -> list[GlobalByModel]:
        try:
            rows = await self._read(self._all_rows)
        except DataSourceError as e:
            logger.debug("Totals by model unavailable: %s", e)
            return []
        totals: dict[str | None, list[int]] = {}
        for r in rows:
            est = estimate_conversation(str(r["v"] or ""))
            acc = totals.setdefault(est.model_id, [0, 0])
            acc[0] += est.total_tokens
            acc[1] += est.messages
        return [GlobalByModel(model_id=m, tokens=t, messages=n) for m, (t, n) in totals.items()]

    async def fetch_monthly_message_count(self, now: datetime | None = None) -> int:
        # No per-message timestamps are stored reliably, so this is all history.
        try:
            rows = await self._read(self._all_rows)
        except DataSourceError as e:
            logger.debug("Monthly message count unavailable: %s", e)
            return 0
        return sum(estimate_conversation(str(r["v"] or "")).messages for r in rows)

    async def fetch_period_tokens_by_model(self, now: datetime | None = None) -> list[PeriodByModel]:
        """Per-model totals where every conversation counts toward every period.

        The history table that would say when a conversation was active is
        never populated, so day/week/month/year all see the same conversations.
        """
        try:
            rows = await self._read(self._all_rows)
        except DataSourceError as e:
            logger.debug("Period totals unavailable: %s", e)
            return []
        per_model: dict[str | None, list[int]] = {}
        for r in rows:
            est = estimate_conversation(str(r["v"] or ""))
            acc = per_model.setdefault(est.model_id, [0, 0])
            acc[0] += est.total_tokens
            acc[1] += 1
        out = []
        for model_id, (tokens, convs) in per_model.items():
            cost = estimate_usd(tokens, self._rate(model_id))
            out.append(
                PeriodByModel(
                    model_id=model_id,
                    day_tokens=tokens, week_tokens=tokens, month_tokens=tokens, year_tokens=tokens,
                    day_messages=convs, week_messages=convs, month_messages=convs,
                    day_cost=cost, week_cost=cost, month_cost=cost, year_cost=cost,
                )
            )
        return out

    async def fetch_period_tokens_by_model_for_keys(
        self, keys: list[str], now: datetime | None = None
    ) -> list[PeriodByModel]:
        """Bucket the history items of ``keys`` by their own timestamps."""
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        try:
            rows = await self._read(
                lambda c: c.execute(self._select(self._key_filter(f"IN ({placeholders})")), list(keys)).fetchall()
            )
        except DataSourceError as e:
            logger.debug("Period totals for keys unavailable: %s", e)
            return []

        local_now = (now or datetime.now(timezone.utc)).astimezone()
        day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = day - timedelta(days=day.weekday())
        month = day.replace(day=1)
        year = month.replace(month=1)

        per_model: dict[str | None, dict[str, int]] = {}
        for r in rows:
            est = estimate_conversation(str(r["v"] or ""))
            history = _history_items(str(r["v"] or ""))
            acc = per_model.setdefault(est.model_id, dict.fromkeys(_PERIOD_KEYS, 0))
            for item in history:
                ts = history_item_timestamp(item)
                if ts is None:
                    continue
                tokens = round_tokens(deep_count(item))
                if ts >= day:
                    acc["dt"] += tokens
                    acc["dm"] += 1
                if ts >= week:
                    acc["wt"] += tokens
                    acc["wm"] += 1
                if ts >= month:
                    acc["mt"] += tokens
                    acc["mm"] += 1
                if ts >= year:
                    acc["yt"] += tokens

        out = []
        for model_id, a in per_model.items():
            rate = self._rate(model_id)
            out.append(
                PeriodByModel(
                    model_id=model_id,
                    day_tokens=a["dt"], week_tokens=a["wt"], month_tokens=a["mt"], year_tokens=a["yt"],
                    day_messages=a["dm"], week_messages=a["wm"], month_messages=a["mm"],
                    day_cost=estimate_usd(a["dt"], rate),
                    week_cost=estimate_usd(a["wt"], rate),
                    month_cost=estimate_usd(a["mt"], rate),
                    year_cost=estimate_usd(a["yt"], rate),
                )
            )
        return out


def _history_items(text: str) -> list[Any]:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return []
    history = obj.get("history") if isinstance(obj, dict) else None
    return history if isinstance(history, list) else []
