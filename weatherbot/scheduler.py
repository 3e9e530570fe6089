"""
Scheduler module for the weather bot.

Runs the periodic jobs on one asyncio event loop:
- Forecasts: posted every 2 hours
- Alerts: checked every 6 hours
- Local station reposts: hourly, when a local station account is configured

Every job goes through its own RetryController. At start-up the saved
stats are checked for a missed cycle (e.g. the host was asleep through
the scheduled time); a missed forecast is posted immediately as a late run.
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import ScheduleConfig, Settings
from .database import Database
from .errors import WeatherBotError
from .fetcher import WeatherFetcher
from .filters import FilterChain
from .messages import ExtraGenerator
from .pipeline import ALERT_JOB, FORECAST_JOB, WeatherPipeline
from .publisher import create_publisher
from .retry import RetryController, RetryOutcome, RetryPolicy, SleepFunc
from .stats import StatsStore, utcnow

logger = logging.getLogger(__name__)

FORECAST_JOB_ID = "forecast_job"
ALERT_JOB_ID = "alert_job"
REPOST_JOB_ID = "repost_job"


def is_cycle_missed(
    last_success: datetime,
    period: timedelta,
    grace: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """True if more than one period plus grace has passed since the last success."""
    now = now or utcnow()
    return now - last_success > period + grace


def _next_run(job: Any) -> Optional[str]:
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run_time = getattr(job, "next_run_time", None) if job else None
    return next_run_time.isoformat() if next_run_time else None


class CycleScheduler:
    """
    Manages the periodic forecast and alert jobs.

    Cron, late and manual runs of one job are separate APScheduler jobs, so
    each cycle holds a per-job lock for its whole retry sequence. Runs of
    the same job queue behind each other; the forecast and alert jobs may
    run concurrently.
    """

    def __init__(
        self,
        pipeline: WeatherPipeline,
        policy: RetryPolicy,
        schedule: Optional[ScheduleConfig] = None,
        database: Optional[Database] = None,
        non_retryable_codes: Optional[List[int]] = None,
        alerts_enabled: bool = True,
        local_station_id: Optional[str] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.pipeline = pipeline
        self.policy = policy
        self.schedule = schedule or ScheduleConfig()
        self.database = database
        self.alerts_enabled = alerts_enabled
        self.local_station_id = local_station_id
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.schedule.timezone or "UTC")
        self.controllers: Dict[str, RetryController] = {
            FORECAST_JOB: RetryController(non_retryable_codes, sleep),
            ALERT_JOB: RetryController(non_retryable_codes, sleep),
        }
        self.locks: Dict[str, asyncio.Lock] = {
            FORECAST_JOB: asyncio.Lock(),
            ALERT_JOB: asyncio.Lock(),
        }
        self._is_running = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        stats: StatsStore,
        database: Optional[Database] = None,
    ) -> "CycleScheduler":
        """Wire the fetcher, publisher and filter chain described by ``settings``."""
        alerts_enabled = not settings.alerts.disabled
        filter_chain = FilterChain.from_config(settings.alerts.filters) if alerts_enabled else FilterChain()
        for line in filter_chain.describe():
            logger.info(line)

        pipeline = WeatherPipeline(
            fetcher=WeatherFetcher(settings.weather, settings.alerts),
            publisher=create_publisher(settings.publisher),
            stats=stats,
            filter_chain=filter_chain,
            database=database,
            extras=None if settings.extra.disabled else ExtraGenerator(),
        )
        return cls(
            pipeline=pipeline,
            policy=settings.retry.to_policy(),
            schedule=settings.schedule,
            database=database,
            non_retryable_codes=settings.publisher.non_retryable_codes,
            alerts_enabled=alerts_enabled,
            local_station_id=settings.publisher.local_station_id,
        )

    @property
    def forecast_period(self) -> timedelta:
        return timedelta(minutes=self.schedule.forecast_period_minutes)

    @property
    def alert_period(self) -> timedelta:
        return timedelta(minutes=self.schedule.alert_period_minutes)

    @property
    def grace(self) -> timedelta:
        return timedelta(minutes=self.schedule.grace_minutes)

    # =========================================================================
    # Cycles
    # =========================================================================

    async def run_forecast_cycle(self, late: bool = False) -> Any:
        """One forecast cycle with retries and fallback."""
        lock = self.locks[FORECAST_JOB]
        if lock.locked():
            logger.info("Forecast cycle already in progress, waiting for it to finish")

        async with lock:
            if not late and is_cycle_missed(self.pipeline.stats.last_update, self.forecast_period, self.grace):
                logger.warning("Previous forecast cycle did not succeed on schedule")

            name = "forecast late run" if late else "forecast"
            outcome = RetryOutcome(name=name)
            result = await self.controllers[FORECAST_JOB].run(
                lambda: self.pipeline.run_forecast(late=late),
                self.policy,
                self.pipeline.notify_forecast_failure,
                name=name,
                outcome=outcome,
            )
            self._record(FORECAST_JOB, outcome, late)
            return result

    async def run_alert_cycle(self) -> Any:
        """One alert cycle with retries and fallback."""
        lock = self.locks[ALERT_JOB]
        if lock.locked():
            logger.info("Alert cycle already in progress, waiting for it to finish")

        async with lock:
            if is_cycle_missed(self.pipeline.stats.last_alert_update, self.alert_period, self.grace):
                logger.warning("Previous alert cycle did not succeed on schedule")

            outcome = RetryOutcome(name="alerts")
            result = await self.controllers[ALERT_JOB].run(
                self.pipeline.run_alerts,
                self.policy,
                self.pipeline.notify_alert_failure,
                name="alerts",
                outcome=outcome,
            )
            self._record(ALERT_JOB, outcome, False)
            return result

    async def run_repost_cycle(self) -> List[Any]:
        """Repost the local station's recent posts. Failures are logged, not retried."""
        if not self.local_station_id:
            return []
        window = timedelta(minutes=self.schedule.repost_window_minutes)
        try:
            return await self.pipeline.run_reposts(self.local_station_id, window)
        except WeatherBotError as e:
            logger.error(f"Reposting local station {self.local_station_id} failed: {e}")
            return []

    def _record(self, job: str, outcome: RetryOutcome, late: bool) -> None:
        if self.database is None:
            return
        self.database.record_run(
            job=job,
            state=outcome.state.value,
            attempts=outcome.attempts,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
            late=late,
            delays_ms=outcome.delays_ms,
            error=outcome.last_error,
        )

    # =========================================================================
    # Missed cycle detection
    # =========================================================================

    def missed_cycles(self, now: Optional[datetime] = None) -> List[str]:
        """Jobs whose last success is older than one period plus grace."""
        now = now or utcnow()
        stats = self.pipeline.stats
        missed = []
        if is_cycle_missed(stats.last_update, self.forecast_period, self.grace, now):
            missed.append(FORECAST_JOB)
        if self.alerts_enabled and is_cycle_missed(stats.last_alert_update, self.alert_period, self.grace, now):
            missed.append(ALERT_JOB)
        return missed

    def check_missed_cycles(self, now: Optional[datetime] = None) -> List[str]:
        """Queue an immediate run for every missed cycle."""
        missed = self.missed_cycles(now)
        for job in missed:
            if job == FORECAST_JOB:
                logger.warning("Missed scheduled forecast update. Presumably by waking from sleep.")
                self.scheduler.add_job(
                    self.run_forecast_cycle,
                    kwargs={"late": True},
                    id="forecast_late_run",
                    name="Late Forecast",
                    replace_existing=True,
                )
            else:
                logger.warning("Missed scheduled alert check.")
                self.scheduler.add_job(
                    self.run_alert_cycle,
                    id="alert_late_run",
                    name="Late Alert Check",
                    replace_existing=True,
                )
        return missed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_forecast_cycle,
            trigger=CronTrigger.from_crontab(self.schedule.forecast_cron, timezone=self.scheduler.timezone),
            id=FORECAST_JOB_ID,
            name='Forecast Post',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        if self.alerts_enabled:
            self.scheduler.add_job(
                self.run_alert_cycle,
                trigger=CronTrigger.from_crontab(self.schedule.alert_cron, timezone=self.scheduler.timezone),
                id=ALERT_JOB_ID,
                name='Alert Check',
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        if self.local_station_id:
            self.scheduler.add_job(
                self.run_repost_cycle,
                trigger=CronTrigger.from_crontab(self.schedule.repost_cron, timezone=self.scheduler.timezone),
                id=REPOST_JOB_ID,
                name='Local Station Repost',
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.check_missed_cycles()
        self.scheduler.start()
        self._is_running = True

        logger.info(f"Scheduler started: forecasts '{self.schedule.forecast_cron}', "
                    f"alerts '{self.schedule.alert_cron if self.alerts_enabled else 'disabled'}'")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Scheduler stopped")

    def run_now(self, job: str) -> None:
        """Queue an immediate, unflagged run of ``job``."""
        if job == FORECAST_JOB:
            func = self.run_forecast_cycle
        elif job == ALERT_JOB and self.alerts_enabled:
            func = self.run_alert_cycle
        else:
            raise ValueError(f"Unknown or disabled job: {job}")
        self.scheduler.add_job(func, id=f"{job}_manual_run", replace_existing=True)

    def get_scheduler_status(self) -> dict:
        """Get scheduler status information."""
        forecast_job = self.scheduler.get_job(FORECAST_JOB_ID)
        alert_job = self.scheduler.get_job(ALERT_JOB_ID)

        def last(job: str) -> Optional[dict]:
            outcome = self.controllers[job].last_outcome
            if outcome is None:
                return None
            data = asdict(outcome)
            data["state"] = outcome.state.value
            return data

        return {
            "is_running": self._is_running,
            "forecast_cron": self.schedule.forecast_cron,
            "alert_cron": self.schedule.alert_cron if self.alerts_enabled else None,
            "repost_cron": self.schedule.repost_cron if self.local_station_id else None,
            "next_forecast_run": _next_run(forecast_job),
            "next_alert_run": _next_run(alert_job),
            "last_forecast_outcome": last(FORECAST_JOB),
            "last_alert_outcome": last(ALERT_JOB),
            "missed_cycles": self.missed_cycles(),
        }

    @property
    def is_running(self) -> bool:
        return self._is_running
