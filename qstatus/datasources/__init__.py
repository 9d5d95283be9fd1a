"""Usage data providers: Amazon Q (SQLite) and Claude Code (JSONL)."""

from qstatus.datasources.base import DataSource, DataSourceError
from qstatus.datasources.factory import create_data_source
from qstatus.datasources.jsonl import ClaudeCodeDataSource
from qstatus.datasources.sqlite import QDBDataSource

__all__ = [
    "ClaudeCodeDataSource",
    "DataSource",
    "DataSourceError",
    "QDBDataSource",
    "create_data_source",
]
