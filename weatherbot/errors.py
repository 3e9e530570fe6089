"""
Exception hierarchy for the weather bot.

Filter configuration problems surface once at chain construction, per-batch
data problems abort a single filter application, and delivery failures are
classified as transient (retried) or fatal (routed to the fallback notifier).
"""

from typing import Iterable, Optional, Tuple


class WeatherBotError(Exception):
    """Base exception for weather bot errors."""
    pass


class ValidationError(WeatherBotError):
    """Malformed filter rule detected while building a filter chain."""

    def __init__(self, message: str, index: Optional[int] = None):
        if index is not None:
            message = f"Filter #{index}: {message}"
        super().__init__(message)
        self.index = index


class PathTypeError(WeatherBotError, TypeError):
    """A date restriction resolved to something that is not a date."""
    pass


class TransientError(WeatherBotError):
    """Network, protocol or remote 5xx failure. Safe to retry."""
    pass


class FetchError(TransientError):
    """Custom exception for feed fetching errors."""
    pass


class PlatformError(WeatherBotError):
    """The posting platform rejected a message with one or more status codes."""

    def __init__(self, message: str, codes: Iterable[int] = ()):
        super().__init__(message)
        self.codes: Tuple[int, ...] = tuple(codes)


class FatalError(PlatformError):
    """Permanent rejection. Never retried."""
    pass


class PersistenceError(WeatherBotError):
    """Stats could not be written to disk."""
    pass
