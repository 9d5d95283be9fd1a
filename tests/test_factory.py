"""Tests for provider selection."""

from __future__ import annotations

from pathlib import Path

from qstatus.config import CostMode, DataSourceType, Settings
from qstatus.datasources import ClaudeCodeDataSource, QDBDataSource, create_data_source


class TestCreateDataSource:
    def test_amazon_q_by_default(self, tmp_path: Path):
        settings = Settings(
            db_path=str(tmp_path / "data.sqlite3"),
            cost_rate_per_1k_tokens_usd=0.01,
            model_pricing={"claude-sonnet": 0.003},
        )
        source = create_data_source(settings)

        assert isinstance(source, QDBDataSource)
        assert source.db_path == tmp_path / "data.sqlite3"
        assert source.default_context_window == 175_000
        assert source.cost_rate_per_1k == 0.01
        assert source.model_pricing == {"claude-sonnet": 0.003}

    def test_claude_code_from_settings(self):
        settings = Settings(data_source="claude-code", cost_mode="calculate", claude_config_paths=["/x"])
        source = create_data_source(settings)

        assert isinstance(source, ClaudeCodeDataSource)
        assert source.cost_mode is CostMode.CALCULATE
        assert source.config_paths == ["/x"]
        assert source.context_window == 200_000

    def test_explicit_type_overrides_settings(self, settings):
        source = create_data_source(settings, DataSourceType.CLAUDE_CODE)
        assert source.name == "claude-code"
