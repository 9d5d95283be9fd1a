"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from typing import Any, Callable

import pytest

from qstatus.config import Settings
from qstatus.core.models import ClaudeUsageEntry


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's own config and Claude data out of every test."""
    for var in list(os.environ):
        if var.startswith("QSTATUS_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("CLAUDE_CONFIG_DIR", raising=False)
    monkeypatch.setenv("QSTATUS_CONFIG_FILE", str(tmp_path / "no-such-config.yaml"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def settings() -> Settings:
    return Settings()


# -- Claude Code transcripts ---------------------------------------------------


@pytest.fixture
def entry_dict() -> Callable[..., dict[str, Any]]:
    """Build one JSONL usage line as a dict."""

    def build(
        timestamp: str,
        input_tokens: int = 100,
        output_tokens: int = 50,
        session_id: str | None = "session-1",
        model: str | None = "claude-3-5-sonnet-20241022",
        message_id: str | None = None,
        request_id: str | None = None,
        cost: float | None = None,
        cwd: str | None = "/proj",
        cache_creation: int | None = None,
        cache_read: int | None = None,
    ) -> dict[str, Any]:
        usage: dict[str, Any] = {"input_tokens": input_tokens, "output_tokens": output_tokens}
        if cache_creation is not None:
            usage["cache_creation_input_tokens"] = cache_creation
        if cache_read is not None:
            usage["cache_read_input_tokens"] = cache_read
        message: dict[str, Any] = {"usage": usage}
        if model is not None:
            message["model"] = model
        message["id"] = message_id or f"msg-{timestamp}"
        line: dict[str, Any] = {"timestamp": timestamp, "message": message, "type": "assistant"}
        if session_id is not None:
            line["sessionId"] = session_id
        if request_id is not None:
            line["requestId"] = request_id
        if cost is not None:
            line["costUSD"] = cost
        if cwd is not None:
            line["cwd"] = cwd
        return line

    return build


@pytest.fixture
def make_entry(entry_dict) -> Callable[..., ClaudeUsageEntry]:
    def build(timestamp: str, **kwargs: Any) -> ClaudeUsageEntry:
        return ClaudeUsageEntry.from_dict(entry_dict(timestamp, **kwargs))

    return build


@pytest.fixture
def claude_root(tmp_path: Path) -> Path:
    """A fake ``~/.claude`` with an empty ``projects/`` folder."""
    root = tmp_path / ".claude"
    (root / "projects").mkdir(parents=True)
    return root


@pytest.fixture
def write_jsonl(claude_root: Path) -> Callable[..., Path]:
    """Write lines (dicts or raw strings) to ``projects/<project>/<name>.jsonl``."""

    def write(name: str, lines: list[Any], project: str = "proj") -> Path:
        folder = claude_root / "projects" / project
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{name}.jsonl"
        with open(path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")
        return path

    return write


# -- Amazon Q database ---------------------------------------------------------


@pytest.fixture
def conversation() -> Callable[..., dict[str, Any]]:
    """Build an Amazon Q conversation document."""

    def build(
        history: list[Any] | None = None,
        cwd: str | None = "/proj",
        model_id: str | None = "claude-sonnet",
        context_window: int | None = None,
        context_files: list[Any] | None = None,
        tools: Any = None,
        system_prompts: Any = None,
    ) -> dict[str, Any]:
        doc: dict[str, Any] = {"history": history or []}
        if cwd is not None:
            doc["env_context"] = {"env_state": {"current_working_directory": cwd}}
        info: dict[str, Any] = {}
        if model_id is not None:
            info["model_id"] = model_id
        if context_window is not None:
            info["context_window_tokens"] = context_window
        if info:
            doc["model_info"] = info
        if context_files is not None:
            doc["context_manager"] = {"context_files": context_files}
        if tools is not None:
            doc["tool_manager"] = tools
        if system_prompts is not None:
            doc["system_prompts"] = system_prompts
        return doc

    return build


@pytest.fixture
def q_db(tmp_path: Path) -> Callable[..., Path]:
    """Create ``data.sqlite3`` with a ``conversations(key, value)`` table."""

    def create(rows: list[tuple[str, Any]], table: str = "conversations") -> Path:
        path = tmp_path / "data.sqlite3"
        conn = sqlite3.connect(path)
        try:
            conn.execute(f'CREATE TABLE IF NOT EXISTS "{table}" (key TEXT PRIMARY KEY, value TEXT)')
            conn.execute("CREATE TABLE IF NOT EXISTS history (id INTEGER PRIMARY KEY, command TEXT)")
            conn.executemany(
                f'INSERT INTO "{table}" (key, value) VALUES (?, ?)',
                [(k, v if isinstance(v, str) else json.dumps(v)) for k, v in rows],
            )
            conn.commit()
        finally:
            conn.close()
        return path

    return create
