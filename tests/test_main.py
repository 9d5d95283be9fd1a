"""Tests for the command-line front end."""

from __future__ import annotations

import io
import json
import sys
from pathlib import Path

import pytest
from rich.console import Console

from qstatus.coordinator import UsageViewModel
from qstatus.main import main, render


def run_cli(monkeypatch: pytest.MonkeyPatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["qstatus", *args])
    with pytest.raises(SystemExit) as exc:
        main()
    return exc.value.code


@pytest.fixture
def q_database(monkeypatch, q_db, conversation) -> Path:
    path = q_db(
        [
            ("conv-a", conversation(history=[{"user": {"content": "x" * 400}}])),
            ("conv-b", conversation(history=[{"user": {"content": "x" * 800}}], cwd="/other")),
        ]
    )
    monkeypatch.setenv("QSTATUS_DB_PATH", str(path))
    return path


class TestRender:
    def test_empty_view(self):
        out = io.StringIO()
        Console(file=out, width=120).print(render(UsageViewModel(data_source_name="amazon-q")))
        text = out.getvalue()
        assert "q-status" in text
        assert "amazon-q" in text
        assert "Active:" not in text


class TestStatus:
    def test_json_snapshot(self, monkeypatch, capsys, q_database):
        assert run_cli(monkeypatch, "--source", "amazon-q", "status", "--json") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["source"] == "amazon-q"
        assert data["tokens_used"] == 200
        assert data["session_limit"] == 44_000
        assert data["global"]["sessions"] == 2
        assert data["active_session"] is None
        assert [s["id"] for s in data["sessions"]] == ["conv-b", "conv-a"]

    def test_missing_database(self, monkeypatch, capsys, tmp_path):
        monkeypatch.setenv("QSTATUS_DB_PATH", str(tmp_path / "missing.sqlite3"))
        assert run_cli(monkeypatch, "status") == 1
        assert "Could not read usage data" in capsys.readouterr().out


class TestSessions:
    def test_table(self, monkeypatch, capsys, q_database):
        assert run_cli(monkeypatch, "sessions") == 0
        out = capsys.readouterr().out
        assert "conv-a" in out
        assert "conv-b" in out

    def test_grouped(self, monkeypatch, capsys, q_database):
        assert run_cli(monkeypatch, "sessions", "--group-by-folder") == 0
        out = capsys.readouterr().out
        assert "/proj" in out
        assert "conv-a" not in out


class TestBlocks:
    @pytest.fixture(autouse=True)
    def transcripts(self, monkeypatch, claude_root, write_jsonl, entry_dict):
        monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(claude_root))
        write_jsonl(
            "s1",
            [
                entry_dict("2024-01-10T10:00:00Z", session_id="s1"),
                entry_dict("2024-01-10T10:20:00Z", session_id="s1"),
            ],
        )

    def test_named_session(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "blocks", "s1") == 0
        assert "Blocks of s1" in capsys.readouterr().out

    def test_unknown_session(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "blocks", "nope") == 1
        assert "Unknown session" in capsys.readouterr().out

    def test_no_active_session(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "blocks") == 1
        assert "No active Claude Code session" in capsys.readouterr().out


def test_no_command_prints_help(monkeypatch, capsys):
    assert run_cli(monkeypatch) == 1
    assert "usage:" in capsys.readouterr().out
