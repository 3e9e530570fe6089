"""
Weather Bot

Posts scheduled weather updates to a social-posting service:
- Forecast posts every 2 hours, with a bonus statement
- Weather alert posts, reduced by a configurable filter chain
- Bounded retries with linear backoff and a fallback notice
- Missed cycle detection from persisted delivery stats
"""

__version__ = "1.0.0"

from .errors import (
    WeatherBotError,
    ValidationError,
    PathTypeError,
    TransientError,
    FetchError,
    PlatformError,
    FatalError,
    PersistenceError,
)
from .filters import ABSENT, FilterChain, FilterRule, build_rule, resolve_path
from .retry import RetryController, RetryPolicy, RetryState
from .stats import StatsRecord, StatsStore
from .pipeline import WeatherPipeline
from .scheduler import CycleScheduler, is_cycle_missed
from .api import app

__all__ = [
    "WeatherBotError",
    "ValidationError",
    "PathTypeError",
    "TransientError",
    "FetchError",
    "PlatformError",
    "FatalError",
    "PersistenceError",
    "ABSENT",
    "FilterChain",
    "FilterRule",
    "build_rule",
    "resolve_path",
    "RetryController",
    "RetryPolicy",
    "RetryState",
    "StatsRecord",
    "StatsStore",
    "WeatherPipeline",
    "CycleScheduler",
    "is_cycle_missed",
    "app",
]
