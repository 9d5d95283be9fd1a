"""Build the provider selected in settings."""

from __future__ import annotations

import logging

from qstatus.config import DataSourceType, Settings
from qstatus.datasources.base import DataSource
from qstatus.datasources.jsonl import ClaudeCodeDataSource
from qstatus.datasources.sqlite import QDBDataSource

logger = logging.getLogger(__name__)


def create_data_source(settings: Settings, source_type: DataSourceType | None = None) -> DataSource:
    source_type = source_type or settings.data_source
    if source_type is DataSourceType.CLAUDE_CODE:
        logger.info("Using Claude Code data source")
        return ClaudeCodeDataSource(
            config_paths=settings.claude_config_paths,
            cost_mode=settings.cost_mode,
            context_window=settings.claude_context_window_tokens,
        )
    logger.info("Using Amazon Q data source at %s", settings.resolved_db_path)
    return QDBDataSource(
        db_path=settings.resolved_db_path,
        default_context_window=settings.default_context_window_tokens,
        cost_rate_per_1k=settings.cost_rate_per_1k_tokens_usd,
        model_pricing=settings.model_pricing,
    )
