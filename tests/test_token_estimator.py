"""Tests for the character-count token estimator."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from qstatus.core.token_estimator import (
    CharBreakdown,
    contains_compaction_marker,
    deep_count,
    estimate_conversation,
    estimate_tokens,
    history_item_timestamp,
    round_tokens,
)


class TestRoundTokens:
    def test_four_hundred_chars_is_one_hundred_tokens(self):
        assert round_tokens(400) == 100

    def test_zero_and_negative(self):
        assert round_tokens(0) == 0
        assert round_tokens(-5) == 0

    def test_rounds_to_nearest_ten(self):
        assert round_tokens(19) == 0
        assert round_tokens(20) == 10
        assert round_tokens(59) == 10
        assert round_tokens(60) == 20

    def test_multiple_of_ten_and_monotonic(self):
        previous = 0
        for chars in range(0, 3000):
            tokens = round_tokens(chars)
            assert tokens % 10 == 0
            assert tokens >= previous
            previous = tokens


class TestEstimateTokens:
    def test_categories_rounded_separately(self):
        breakdown = CharBreakdown(history_chars=400, context_files_chars=40, tools_chars=80, system_chars=200)
        assert estimate_tokens(breakdown) == 100 + 10 + 20 + 50

    def test_fallback_when_no_category_has_content(self):
        assert estimate_tokens(CharBreakdown(fallback_chars=400)) == 100


class TestDeepCount:
    def test_counts_only_strings(self):
        assert deep_count({"a": "xyz", "b": ["ab", 1, {"c": "d"}], "n": None, "t": True}) == 6

    def test_scalar(self):
        assert deep_count(42) == 0
        assert deep_count("hello") == 5


class TestCompactionMarkers:
    def test_detects_markers_case_insensitive(self):
        assert contains_compaction_marker({"content": "Context OVERFLOW reached"})
        assert contains_compaction_marker(["the history was truncated"])
        assert contains_compaction_marker("please summarize this")

    def test_plain_text(self):
        assert not contains_compaction_marker({"content": "write a parser"})


class TestHistoryTimestamp:
    def test_newest_of_user_and_assistant(self):
        item = {
            "assistant": {"timestamp": "2024-01-01T10:00:00Z"},
            "user": {"created_at": "2024-01-01T11:00:00.123Z"},
        }
        assert history_item_timestamp(item) == datetime(2024, 1, 1, 11, 0, 0, 123000, tzinfo=timezone.utc)

    def test_missing_or_invalid(self):
        assert history_item_timestamp({"user": {"content": "hi"}}) is None
        assert history_item_timestamp({"user": {"timestamp": "yesterday"}}) is None
        assert history_item_timestamp("not a dict") is None


class TestEstimateConversation:
    def test_full_document(self, conversation):
        doc = conversation(
            history=[{"user": {"content": "x" * 400}}],
            cwd="/work/app",
            model_id="claude-sonnet-4",
            context_window=200_000,
            context_files=[{"path": "a" * 40}],
            tools={"t": "b" * 80},
            system_prompts=["s" * 200],
        )
        est = estimate_conversation(json.dumps(doc))

        assert est.history_tokens == 100
        assert est.context_files_tokens == 10
        assert est.tools_tokens == 20
        assert est.system_tokens == 50
        assert est.total_tokens == 180
        assert est.messages == 1
        assert est.cwd == "/work/app"
        assert est.model_id == "claude-sonnet-4"
        assert est.context_window == 200_000
        assert est.compaction_markers is False

    def test_non_json_counts_everything_as_history(self):
        est = estimate_conversation("x" * 400)
        assert est.total_tokens == 100
        assert est.history_tokens == 100
        assert est.messages == 0
        assert est.cwd is None

    def test_empty_categories_use_raw_length(self):
        text = json.dumps({"history": [], "padding": "p" * 400})
        est = estimate_conversation(text)
        assert est.total_tokens == round_tokens(len(text))
        assert est.history_tokens == 0

    def test_compaction_marker_in_history(self, conversation):
        doc = conversation(history=[{"user": {"content": "Please summarize our chat"}}])
        assert estimate_conversation(json.dumps(doc)).compaction_markers is True

    def test_compaction_marker_in_context_manager(self, conversation):
        doc = conversation(context_files=["compacted notes"])
        assert estimate_conversation(json.dumps(doc)).compaction_markers is True

    def test_last_activity_from_history(self, conversation):
        doc = conversation(
            history=[
                {"user": {"content": "a", "timestamp": "2024-03-01T08:00:00Z"}},
                {"assistant": {"content": "b", "timestamp": "2024-03-02T09:30:00Z"}},
            ]
        )
        est = estimate_conversation(json.dumps(doc))
        assert est.last_activity == datetime(2024, 3, 2, 9, 30, tzinfo=timezone.utc)
        assert est.messages == 2
