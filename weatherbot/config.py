"""
Configuration for the weather bot.

Settings are read from a JSON file (``WEATHERBOT_CONFIG``, default
``config.json``) into pydantic models. A handful of deployment values can
be overridden from the environment. Filter rules are kept as raw dicts here;
they are validated when the alert filter chain is built.
"""

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .retry import DEFAULT_NON_RETRYABLE_CODES, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_MAX_BYTES = 1_000_000


class WeatherConfig(BaseModel):
    key: str = ""
    location: Dict[str, str] = Field(default_factory=lambda: {"q": "Columbia,us"})
    units: str = "metric"
    url: str = "https://api.openweathermap.org/data/2.5/forecast"


class AppInfo(BaseModel):
    """Identifies the bot to the NWS API, which requires contact details."""
    name: str = "weatherbot"
    version: str = "1.0"
    website: str = ""
    contact: str = ""

    def user_agent(self) -> str:
        details = ", ".join(part for part in (self.website, self.contact) if part)
        return f"{self.name}/{self.version} ({details})" if details else f"{self.name}/{self.version}"


class AlertsConfig(BaseModel):
    disabled: bool = False
    url: str = "https://api.weather.gov/alerts/active?zone=MOC019"
    format: Literal["geojson", "atom"] = "geojson"
    app: AppInfo = Field(default_factory=AppInfo)
    filters: List[Dict[str, Any]] = Field(default_factory=list)


class PublisherConfig(BaseModel):
    endpoint: Optional[str] = None
    token: Optional[str] = None
    dry_run: bool = True
    timeout: int = 15
    # Account whose recent posts are reposted hourly; None disables reposting
    local_station_id: Optional[str] = None
    timeline_endpoint: Optional[str] = None
    repost_endpoint: Optional[str] = None
    non_retryable_codes: List[int] = Field(
        default_factory=lambda: sorted(DEFAULT_NON_RETRYABLE_CODES)
    )


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=0, ge=0)
    delay_increment_ms: int = Field(default=131072, ge=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            delay_increment_ms=self.delay_increment_ms,
        )


class ScheduleConfig(BaseModel):
    forecast_cron: str = "0 */2 * * *"
    alert_cron: str = "0 */6 * * *"
    forecast_period_minutes: int = 120
    alert_period_minutes: int = 360
    repost_cron: str = "30 */1 * * *"
    repost_window_minutes: int = 60
    grace_minutes: int = 7
    timezone: Optional[str] = None


class ExtraConfig(BaseModel):
    disabled: bool = False


class PathsConfig(BaseModel):
    stats: str = "data/stats.json"
    database: str = "data/weatherbot.db"


class LogConfig(BaseModel):
    log_dir: Optional[str] = "logs"
    level: str = "INFO"


class Settings(BaseModel):
    weather: WeatherConfig = Field(default_factory=WeatherConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    extra: ExtraConfig = Field(default_factory=ExtraConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    log: LogConfig = Field(default_factory=LogConfig)


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from JSON and apply environment overrides.

    A missing file yields default settings (dry-run publishing).
    """
    config_path = Path(path or os.getenv("WEATHERBOT_CONFIG", DEFAULT_CONFIG_PATH))
    if config_path.exists():
        data = json.loads(config_path.read_text(encoding="utf-8"))
        settings = Settings.model_validate(data)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Config file {config_path} not found, using defaults")
        settings = Settings()

    if os.getenv("LOG_LEVEL"):
        settings.log.level = os.environ["LOG_LEVEL"]
    if os.getenv("WEATHERBOT_STATS_PATH"):
        settings.paths.stats = os.environ["WEATHERBOT_STATS_PATH"]
    if os.getenv("WEATHERBOT_DB_PATH"):
        settings.paths.database = os.environ["WEATHERBOT_DB_PATH"]
    if os.getenv("WEATHERBOT_PUBLISH_TOKEN"):
        settings.publisher.token = os.environ["WEATHERBOT_PUBLISH_TOKEN"]
    return settings


def configure_logging(log_config: LogConfig) -> None:
    """Console logging plus size-capped combined and error log files."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if log_config.log_dir:
        log_dir = Path(log_config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        combined = logging.handlers.RotatingFileHandler(
            log_dir / "combined.log", maxBytes=LOG_FILE_MAX_BYTES, backupCount=1
        )
        errors = logging.handlers.RotatingFileHandler(
            log_dir / "error.log", maxBytes=LOG_FILE_MAX_BYTES, backupCount=1
        )
        errors.setLevel(logging.ERROR)
        handlers.extend([combined, errors])

    logging.basicConfig(
        level=log_config.level.upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
