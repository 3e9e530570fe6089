"""
Fetch, filter, format and publish operations for one cycle.

Each ``run_*`` coroutine is one attempt of a cycle; the scheduler wraps it
in a RetryController. A successful attempt updates the shared StatsStore:
the forecast cycle owns ``last_update`` and the extra counters, the alert
cycle owns ``last_alert_update``. Stats writes touch the disk, so they run
in a worker thread.
"""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .database import Database
from .filters import FilterChain
from .messages import (
    ALERT_FAILURE_MESSAGE,
    ERROR_MESSAGES,
    LATE_MESSAGES,
    ExtraGenerator,
    MessageError,
    alert_hash,
    content_hash,
    format_alert,
    format_forecast,
    pick_random,
)
from .publisher import Receipt
from .stats import StatsStore, utcnow

logger = logging.getLogger(__name__)

FORECAST_JOB = "forecast"
ALERT_JOB = "alerts"


class WeatherPipeline:
    """Runs forecast and alert cycles against the fetch/publish collaborators."""

    def __init__(
        self,
        fetcher: Any,
        publisher: Any,
        stats: StatsStore,
        filter_chain: Optional[FilterChain] = None,
        database: Optional[Database] = None,
        extras: Optional[ExtraGenerator] = None,
        rng: Optional[random.Random] = None,
    ):
        self.fetcher = fetcher
        self.publisher = publisher
        self.stats = stats
        self.filter_chain = filter_chain or FilterChain()
        self.database = database
        self.extras = extras
        self.rng = rng or random.Random()
        # Alert hashes posted by this process; covers retries when there is no database
        self._published_alerts: Set[str] = set()

    # =========================================================================
    # Forecast cycle
    # =========================================================================

    async def run_forecast(self, late: bool = False) -> Receipt:
        """Fetch the forecast and post it.

        A late run appends a generic late message instead of a freshly
        generated extra statement.
        """
        data = await self.fetcher.fetch_forecast()
        message = format_forecast(data)
        logger.info("Created forecast")

        extra = None
        if self.extras is not None:
            if late:
                message += pick_random(LATE_MESSAGES, self.rng)
            else:
                extra = self.extras.get_extra(data)
                message += extra.statement
                logger.info(f"Generated {extra.type} extra: {extra.statement!r}")

        receipt = await self.publisher.publish(message)

        await asyncio.to_thread(self.stats.set, "last_update", utcnow())
        if extra is not None:
            await asyncio.to_thread(self.stats.increment, extra.type)
        self._remember(content_hash(FORECAST_JOB, receipt.posted_at, message), FORECAST_JOB, receipt)
        return receipt

    async def notify_forecast_failure(self, error: BaseException) -> None:
        logger.error(f"Giving up on forecast update: {error}")
        await self.publisher.publish(pick_random(ERROR_MESSAGES, self.rng))

    # =========================================================================
    # Alert cycle
    # =========================================================================

    def select_alerts(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Apply the filter chain and drop alerts that were already posted."""
        selected = []
        for record in self.filter_chain.apply(records):
            digest = alert_hash(record)
            if digest in self._published_alerts:
                continue
            if self.database is not None and self.database.has_published(digest):
                continue
            selected.append(record)
        return selected

    async def run_alerts(self) -> List[Receipt]:
        """Fetch active alerts and post every relevant one not yet posted."""
        logger.info("Fetching alerts.")
        records = await self.fetcher.fetch_alerts()
        alerts = self.select_alerts(records)

        if not alerts:
            logger.info("No relevant alerts found")
            await asyncio.to_thread(self.stats.set, "last_alert_update", utcnow())
            return []

        receipts = []
        for record in alerts:
            try:
                message = format_alert(record)
            except MessageError as e:
                logger.error(f"Failure in generating alert message: {e}")
                continue

            logger.info(f"Prepared alert {message!r}")
            receipt = await self.publisher.publish(message)
            digest = alert_hash(record)
            self._published_alerts.add(digest)
            self._remember(digest, ALERT_JOB, receipt)
            receipts.append(receipt)

        await asyncio.to_thread(self.stats.set, "last_alert_update", utcnow())
        return receipts

    async def notify_alert_failure(self, error: BaseException) -> None:
        logger.error(f"Giving up on weather alerts: {error}")
        await self.publisher.publish(ALERT_FAILURE_MESSAGE)

    # =========================================================================
    # Reposts
    # =========================================================================

    async def run_reposts(self, account_id: str, window: timedelta) -> List[str]:
        """Repost ``account_id``'s posts from the last ``window``."""
        reposted = await self.publisher.repost_recent(account_id, window)
        logger.info(f"Reposted {len(reposted)} post(s) from {account_id}")
        return reposted

    def _remember(self, digest: str, job: str, receipt: Receipt) -> None:
        if self.database is not None:
            self.database.record_published(digest, job, receipt.message, receipt.id)

    def close(self) -> None:
        """Close the fetcher and publisher sessions."""
        self.fetcher.close()
        self.publisher.close()
