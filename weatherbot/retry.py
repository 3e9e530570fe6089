"""
Bounded retry with linear backoff for fetch/publish cycles.

A cycle is retried after each failure with a delay that grows by a fixed
increment. Rejections that the posting platform will never accept (account
suspended, duplicate status, ...) skip the remaining attempts. When the
attempts run out a fallback notifier is called exactly once.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, List, Optional

from .errors import FatalError, PlatformError

logger = logging.getLogger(__name__)

# Platform status codes that mean the message can never be accepted.
DEFAULT_NON_RETRYABLE_CODES = frozenset({
    64,   # Account suspended
    88,   # Rate limit exceeded
    185,  # Status update limit reached
    187,  # Duplicate status
    226,  # Blocked by automated content filter
    251,  # Endpoint deprecated
    326,  # Account locked
})

Operation = Callable[[], Awaitable[Any]]
ExhaustedHandler = Callable[[BaseException], Any]
SleepFunc = Callable[[float], Awaitable[Any]]


class RetryState(Enum):
    """States of a retried operation."""
    ATTEMPTING = "attempting"
    SCHEDULING_RETRY = "scheduling_retry"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries."""
    max_attempts: int = 3
    initial_delay_ms: int = 0
    delay_increment_ms: int = 131072

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_ms < 0 or self.delay_increment_ms < 0:
            raise ValueError("retry delays cannot be negative")

    def delay_ms(self, failures: int) -> int:
        """Delay after the ``failures``-th failure (1-indexed)."""
        return self.initial_delay_ms + (failures - 1) * self.delay_increment_ms


@dataclass
class RetryOutcome:
    """Summary of one ``RetryController.run`` call."""
    name: str
    state: RetryState = RetryState.ATTEMPTING
    attempts: int = 0
    delays_ms: List[int] = field(default_factory=list)
    last_error: Optional[str] = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None


class RetryController:
    """
    Runs an async operation until it succeeds, fails fatally, or runs out
    of attempts.

    Attempts of one ``run`` call are strictly sequential. The sleep function
    is injectable so tests can record delays instead of waiting.
    """

    def __init__(
        self,
        non_retryable_codes: Optional[Iterable[int]] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        if non_retryable_codes is None:
            non_retryable_codes = DEFAULT_NON_RETRYABLE_CODES
        self.non_retryable_codes: FrozenSet[int] = frozenset(non_retryable_codes)
        self._sleep = sleep or asyncio.sleep
        self.last_outcome: Optional[RetryOutcome] = None

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, FatalError):
            return False
        if isinstance(error, PlatformError):
            return not self.non_retryable_codes.intersection(error.codes)
        return True

    async def run(
        self,
        operation: Operation,
        policy: RetryPolicy,
        on_exhausted: ExhaustedHandler,
        name: str = "operation",
        outcome: Optional[RetryOutcome] = None,
    ) -> Any:
        """Run ``operation`` under ``policy``.

        Returns the operation's result, or None once ``on_exhausted`` has
        been called with the last error. Pass ``outcome`` to keep a handle
        on this run's summary regardless of later calls.
        """
        if outcome is None:
            outcome = RetryOutcome(name=name)
        self.last_outcome = outcome
        failures = 0

        while True:
            outcome.state = RetryState.ATTEMPTING
            outcome.attempts += 1
            try:
                result = await operation()
            except Exception as e:
                outcome.last_error = f"{type(e).__name__}: {e}"

                if not self.is_retryable(e):
                    logger.error(f"{name} failed with non-retryable error: {e}")
                    await self._exhaust(outcome, on_exhausted, e)
                    return None

                failures += 1
                delay = policy.delay_ms(failures)
                outcome.state = RetryState.SCHEDULING_RETRY
                outcome.delays_ms.append(delay)
                logger.warning(f"{name} attempt {outcome.attempts} failed: {e}")

                if outcome.attempts < policy.max_attempts:
                    logger.info(f"Retrying {name} in {delay}ms. "
                                f"Retry {failures} of {policy.max_attempts - 1}")
                    await self._sleep(delay / 1000)
                    continue

                await self._sleep(delay / 1000)
                logger.error(f"{name} failed after {outcome.attempts} attempt(s)")
                await self._exhaust(outcome, on_exhausted, e)
                return None

            outcome.state = RetryState.SUCCESS
            outcome.finished_at = datetime.now(timezone.utc).isoformat()
            if outcome.attempts > 1:
                logger.info(f"{name} succeeded on attempt {outcome.attempts}")
            return result

    async def _exhaust(
        self,
        outcome: RetryOutcome,
        on_exhausted: ExhaustedHandler,
        error: BaseException,
    ) -> None:
        """Call the fallback once. Its own failure is logged, never retried."""
        outcome.state = RetryState.EXHAUSTED
        outcome.finished_at = datetime.now(timezone.utc).isoformat()
        try:
            result = on_exhausted(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Fallback for {outcome.name} failed: {e}")
