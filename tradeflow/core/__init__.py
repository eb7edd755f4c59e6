"""Core: config loading, errors, logging, and trading calendars."""

from tradeflow.core.calendar import (
    ContinuousCalendar,
    ExchangeCalendar,
    TradingCalendar,
    WeekdayCalendar,
    get_calendar,
)
from tradeflow.core.config import (
    ConstructionConfig,
    RiskConfig,
    SchedulerConfig,
    Settings,
    load_settings,
)
from tradeflow.core.errors import (
    AccountStateUnavailable,
    ConfigError,
    ConflictingGroupState,
    DuplicateSignal,
    MissingPriceData,
    TradingError,
    UnsupportedSizingMode,
)
from tradeflow.core.logging import setup_logging, setup_logging_from_settings

__all__ = [
    "AccountStateUnavailable",
    "ConfigError",
    "ConflictingGroupState",
    "ConstructionConfig",
    "ContinuousCalendar",
    "DuplicateSignal",
    "ExchangeCalendar",
    "MissingPriceData",
    "RiskConfig",
    "SchedulerConfig",
    "Settings",
    "TradingCalendar",
    "TradingError",
    "UnsupportedSizingMode",
    "WeekdayCalendar",
    "get_calendar",
    "load_settings",
    "setup_logging",
    "setup_logging_from_settings",
]
