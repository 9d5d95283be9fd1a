"""q-status — token, cost and session-block tracking for Amazon Q and Claude Code."""

__version__ = "0.1.0"
