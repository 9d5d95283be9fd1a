"""Settings for q-status.

Values resolve in this order: constructor arguments, ``QSTATUS_*`` environment
variables, the YAML config file (``~/.config/q-status/config.yaml`` unless
``QSTATUS_CONFIG_FILE`` points elsewhere), then the field defaults below.

The coordinator reads a fresh ``Settings`` through a provider callable at the
start of every poll cycle and never mutates it, so the model is frozen.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "q-status" / "config.yaml"
DEFAULT_DB_PATH = Path.home() / "Library" / "Application Support" / "amazon-q" / "data.sqlite3"


class DataSourceType(str, Enum):
    AMAZON_Q = "amazon-q"
    CLAUDE_CODE = "claude-code"

    @property
    def display_name(self) -> str:
        return "Amazon Q" if self is DataSourceType.AMAZON_Q else "Claude Code"


class CostMode(str, Enum):
    """How Claude Code entry costs are derived (see ``ClaudeCostCalculator``)."""

    AUTO = "auto"
    CALCULATE = "calculate"
    DISPLAY = "display"


class ClaudePlan(str, Enum):
    FREE = "free"
    PRO = "pro"
    MAX5X = "max5x"
    MAX20X = "max20x"
    CUSTOM = "custom"


# Monthly USD budget per plan; 0 means no cost limit.
PLAN_COST_LIMITS: dict[ClaudePlan, float] = {
    ClaudePlan.FREE: 0.0,
    ClaudePlan.PRO: 20.0,
    ClaudePlan.MAX5X: 100.0,
    ClaudePlan.MAX20X: 200.0,
}


def _config_file() -> Path:
    override = os.environ.get("QSTATUS_CONFIG_FILE", "")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_FILE


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Read a flat key/value YAML mapping; unreadable or malformed files yield ``{}``."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a mapping, got %s", path, type(data).__name__)
        return {}
    return data


class YamlConfigSource(PydanticBaseSettingsSource):
    """Settings source backed by the per-user YAML config file."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path | None = None) -> None:
        super().__init__(settings_cls)
        self._data = load_yaml_config(path or _config_file())

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {k: v for k, v in self._data.items() if k in self.settings_cls.model_fields and v is not None}


class Settings(BaseSettings):
    """Read-only configuration snapshot for the polling engine."""

    model_config = {
        "env_prefix": "QSTATUS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    # Polling
    polling_interval_seconds: int = 3
    max_polling_interval_seconds: int = 5
    stability_bonus_cap: int = 2  # extra seconds added while nothing changes

    # Limits
    session_token_limit: int = 44_000
    default_context_window_tokens: int = 175_000
    claude_context_window_tokens: int = 200_000

    # Cost
    cost_rate_per_1k_tokens_usd: float = 0.0025
    cost_model_name: str = "q-default"
    model_pricing: dict[str, float] = {}  # model id -> USD per 1k tokens
    cost_mode: CostMode = CostMode.AUTO

    # Plan
    claude_plan: ClaudePlan = ClaudePlan.PRO
    custom_plan_cost_limit: float = 0.0
    custom_plan_token_limit: int = 0

    # Data source
    data_source: DataSourceType = DataSourceType.AMAZON_Q
    db_path: str = str(DEFAULT_DB_PATH)
    claude_config_paths: list[str] = []
    group_by_folder: bool = False

    # Notifications
    notifications_enabled: bool = True
    warn_threshold: int = 70
    high_threshold: int = 90
    critical_threshold: int = 95
    notification_webhook_url: str = ""

    # Display
    show_percent_badge: bool = True
    compact_mode: bool = False
    color_scheme: str = "auto"

    # Logging
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, dotenv_settings, YamlConfigSource(settings_cls))

    @field_validator("data_source", mode="before")
    @classmethod
    def _known_data_source(cls, v: Any) -> Any:
        return _enum_or_default(DataSourceType, v, DataSourceType.AMAZON_Q, "data_source")

    @field_validator("cost_mode", mode="before")
    @classmethod
    def _known_cost_mode(cls, v: Any) -> Any:
        return _enum_or_default(CostMode, v, CostMode.AUTO, "cost_mode")

    @field_validator("claude_plan", mode="before")
    @classmethod
    def _known_plan(cls, v: Any) -> Any:
        return _enum_or_default(ClaudePlan, v, ClaudePlan.PRO, "claude_plan")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, v: Any) -> Any:
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            logger.warning("Unknown log_level %r, using INFO", v)
            return "INFO"
        return level

    @property
    def plan_cost_limit(self) -> float:
        """Monthly USD limit of the selected plan (0 when the plan has none)."""
        if self.claude_plan is ClaudePlan.CUSTOM:
            return max(0.0, self.custom_plan_cost_limit)
        return PLAN_COST_LIMITS[self.claude_plan]

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()

    def rate_for_model(self, model_id: str | None) -> float:
        """Per-1k rate for ``model_id``, falling back to the flat rate."""
        return self.model_pricing.get(model_id or "", self.cost_rate_per_1k_tokens_usd)


def _enum_or_default(enum_cls: type[Enum], value: Any, default: Enum, name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown %s %r, falling back to %r", name, value, default.value)
        return default


def load_settings(**overrides: Any) -> Settings:
    """Build a fresh settings snapshot."""
    return Settings(**overrides)
