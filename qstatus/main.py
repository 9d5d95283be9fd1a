"""Command-line entry point for q-status."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from qstatus.config import DataSourceType, Settings, load_settings
from qstatus.coordinator import UpdateCoordinator, UsageViewModel
from qstatus.core.cost import format_cost, format_usd
from qstatus.core.metrics import format_ttl
from qstatus.core.models import SessionSummary
from qstatus.core.percentage import (
    critical_metric_display,
    critical_percentage_color,
    format_tokens,
    message_quota_color,
    usage_color,
)
from qstatus.core.session_blocks import calculate_burn_rate, filter_recent_blocks, project_block_usage
from qstatus.datasources import ClaudeCodeDataSource, DataSourceError, create_data_source

console = Console()
logger = logging.getLogger(__name__)

# Band names from qstatus.core.percentage mapped to rich styles.
_STYLES = {"orange": "dark_orange", "secondary": "dim"}


def _style(band: str) -> str:
    return _STYLES.get(band, band)


def _session_table(sessions: list[SessionSummary], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Session")
    table.add_column("Folder", overflow="fold")
    table.add_column("Tokens", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Msgs", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("State")
    for s in sessions:
        color = _style(usage_color(s.usage_percent))
        table.add_row(
            s.id[:36],
            s.cwd or "-",
            format_tokens(s.tokens_used),
            f"[{color}]{s.usage_percent:.1f}%[/{color}]",
            str(s.message_count),
            format_cost(s.cost_usd),
            s.state.value,
        )
    return table


def render(vm: UsageViewModel) -> Panel:
    """One-screen status view."""
    quota = _style(message_quota_color(vm.monthly_messages))
    lines = [
        f"Tokens: {format_tokens(vm.tokens_used)} / {format_tokens(vm.session_limit)} "
        f"({vm.percent:.0f}%, {vm.health.value})",
        f"Rate: {vm.tokens_per_minute:.0f} tok/min | To limit: {format_ttl(vm.time_to_limit_seconds)} "
        f"| Cost: {vm.cost_display}",
        f"Sessions: {vm.global_sessions} ({vm.global_near_limit} near limit) | "
        f"All-time: {format_tokens(vm.global_tokens)} tokens, {format_usd(vm.global_cost)}",
        f"Today {format_tokens(vm.periods.day_tokens)} ({format_usd(vm.periods.day_cost)}) | "
        f"Week {format_tokens(vm.periods.week_tokens)} | Month {format_tokens(vm.periods.month_tokens)} "
        f"({format_usd(vm.periods.month_cost)}, [{quota}]{vm.monthly_messages} msgs[/{quota}])",
    ]
    active = vm.active_session
    if active is not None:
        color = _style(critical_percentage_color(vm.critical_percent))
        current, limit, _ = critical_metric_display(active, vm.max_tokens_from_previous_blocks)
        lines.append(
            f"Active: {active.session_id[:12]} ({active.model or 'unknown'}) "
            f"block {active.block_number}/{active.total_blocks} | "
            f"[{color}]{vm.critical_metric_name} {vm.critical_percent:.0f}%[/{color}] ({current} of {limit})"
        )
        lines.append(
            f"Burn: {format_tokens(int(active.tokens_per_hour))} tok/h, "
            f"{format_usd(active.cost_per_hour)}/h, {active.messages_per_hour:.1f} msgs/h"
        )
        if active.current_block is not None:
            projection = project_block_usage(active.current_block)
            if projection is not None:
                lines.append(
                    f"Projected: {format_tokens(projection.total_tokens)} tokens, "
                    f"{format_usd(projection.total_cost)} in {projection.remaining_minutes}m"
                )
    return Panel("\n".join(lines), title=f"q-status · {vm.data_source_name}", style="bold")


def _view_dict(vm: UsageViewModel) -> dict[str, Any]:
    return {
        "source": vm.data_source_name,
        "tokens_used": vm.tokens_used,
        "session_limit": vm.session_limit,
        "percent": round(vm.percent, 1),
        "health": vm.health.value,
        "tokens_per_minute": round(vm.tokens_per_minute, 1),
        "cost": vm.cost_display,
        "global": {
            "sessions": vm.global_sessions,
            "tokens": vm.global_tokens,
            "messages": vm.global_messages,
            "cost_usd": round(vm.global_cost, 4),
            "near_limit": vm.global_near_limit,
        },
        "monthly_messages": vm.monthly_messages,
        "critical_percent": round(vm.critical_percent, 1),
        "critical_metric": vm.critical_metric_name,
        "active_session": vm.active_session.to_dict() if vm.active_session else None,
        "sessions": [s.to_dict() for s in vm.sessions],
    }


# ── Commands ────────────────────────────────────────────────────────────


async def _status(settings: Settings, source_type: DataSourceType | None, as_json: bool = False) -> int:
    coordinator = UpdateCoordinator(create_data_source(settings, source_type), lambda: settings)
    try:
        if not await coordinator.manual_refresh():
            console.print("[red]Could not read usage data (see log)[/red]")
            return 1
    finally:
        await coordinator.source.close()
    if as_json:
        console.print_json(data=_view_dict(coordinator.view))
        return 0
    console.print(render(coordinator.view))
    if coordinator.view.global_top:
        console.print(_session_table(coordinator.view.global_top, "Heaviest sessions"))
    return 0


async def _sessions(settings: Settings, source_type: DataSourceType | None, group: bool, limit: int) -> int:
    source = create_data_source(settings, source_type)
    try:
        sessions = await source.fetch_sessions(limit=limit, group_by_folder=group or settings.group_by_folder)
    except DataSourceError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    finally:
        await source.close()
    console.print(_session_table(sessions, f"{source.name} sessions"))
    return 0


async def _blocks(settings: Settings, session_id: str | None, recent_days: int | None) -> int:
    source = ClaudeCodeDataSource(
        config_paths=settings.claude_config_paths,
        cost_mode=settings.cost_mode,
        context_window=settings.claude_context_window_tokens,
    )
    await source.open_if_needed()
    if session_id is None:
        active = await source.fetch_active_session()
        if active is None:
            console.print("No active Claude Code session")
            return 1
        session_id = active.session_id
    session = source.get_session(session_id)
    if session is None:
        console.print(f"[red]Unknown session {session_id}[/red]")
        return 1

    table = Table(title=f"Blocks of {session_id}")
    table.add_column("#", justify="right")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Tok/min", justify="right")
    table.add_column("")
    blocks = source.blocks_for(session)
    if recent_days is not None:
        blocks = filter_recent_blocks(blocks, days=recent_days)
    for i, block in enumerate(blocks, start=1):
        rate = calculate_burn_rate(block)
        table.add_row(
            str(i),
            block.start_time.strftime("%Y-%m-%d %H:%M"),
            block.end_time.strftime("%Y-%m-%d %H:%M"),
            format_tokens(block.token_counts.total_tokens),
            format_cost(block.cost_usd),
            f"{rate.tokens_per_minute:.0f}" if rate else "-",
            "gap" if block.is_gap else ("active" if block.is_active else ""),
        )
    console.print(table)
    return 0


async def _watch(settings_provider: Callable[[], Settings], source_type: DataSourceType | None) -> int:
    settings = settings_provider()
    coordinator = UpdateCoordinator(create_data_source(settings, source_type), settings_provider)
    with Live(render(coordinator.view), console=console, refresh_per_second=1) as live:
        coordinator.on_update = lambda vm: live.update(render(vm))
        await coordinator.start()
        try:
            while coordinator.is_running:
                await asyncio.sleep(1)
        finally:
            await coordinator.stop()
            await coordinator.source.close()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Token usage monitor for Amazon Q and Claude Code")
    parser.add_argument(
        "--source",
        choices=[t.value for t in DataSourceType],
        help="Override the configured data source",
    )
    sub = parser.add_subparsers(dest="command")

    status_parser = sub.add_parser("status", help="Print one usage snapshot")
    status_parser.add_argument("--json", action="store_true", help="Print the snapshot as JSON")

    sessions_parser = sub.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument("--group-by-folder", action="store_true", help="Merge sessions per folder")
    sessions_parser.add_argument("--limit", type=int, default=50)

    blocks_parser = sub.add_parser("blocks", help="List 5-hour blocks of a Claude Code session")
    blocks_parser.add_argument("session_id", nargs="?", help="Defaults to the active session")
    blocks_parser.add_argument("--recent", type=int, metavar="DAYS", help="Only blocks from the last DAYS days")

    sub.add_parser("watch", help="Live dashboard, refreshed on every change")

    args = parser.parse_args()
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    source_type = DataSourceType(args.source) if args.source else None

    try:
        if args.command == "status":
            code = asyncio.run(_status(settings, source_type, args.json))
        elif args.command == "sessions":
            code = asyncio.run(_sessions(settings, source_type, args.group_by_folder, args.limit))
        elif args.command == "blocks":
            code = asyncio.run(_blocks(settings, args.session_id, args.recent))
        elif args.command == "watch":
            code = asyncio.run(_watch(load_settings, source_type))
        else:
            parser.print_help()
            code = 1
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
