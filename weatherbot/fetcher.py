"""
Weather data fetcher.

Retrieves the two kinds of data the bot posts about:
- Forecasts: OpenWeatherMap 5 day / 3 hour forecast (JSON)
- Alerts: National Weather Service active alerts, either as GeoJSON
  features from api.weather.gov or as a CAP Atom feed

Blocking HTTP calls run in a worker thread so the scheduler's event loop
is never blocked. Any transport or payload problem is raised as FetchError,
which the retry controller treats as transient.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import feedparser
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import AlertsConfig, WeatherConfig
from .errors import FetchError

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5
USER_AGENT = "weatherbot/1.0"


class SourceType(Enum):
    FORECAST = "forecast"
    ALERT = "alert"


@dataclass
class FetchMetadata:
    """Metadata about the last fetch of a source."""
    source_url: str
    source_type: SourceType
    fetch_time: str
    success: bool
    entries_count: int
    error_message: Optional[str]
    response_time_ms: int


class WeatherFetcher:
    """
    Fetch collaborator for the forecast and alert cycles.

    The HTTP session retries idempotent requests on 429/5xx at the transport
    level; whole-cycle retries are the RetryController's job.
    """

    def __init__(
        self,
        weather: WeatherConfig,
        alerts: AlertsConfig,
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.weather = weather
        self.alerts = alerts
        self.timeout = timeout
        self._session = session or self._create_session()
        self._last_fetch_metadata: Dict[str, FetchMetadata] = {}

    def _create_session(self) -> requests.Session:
        """Create HTTP session with retry strategy for availability."""
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        # api.weather.gov rejects requests without an identifying User-Agent
        session.headers.update({
            "User-Agent": self.alerts.app.user_agent() if self.alerts else USER_AGENT,
            "Accept": "application/geo+json, application/json, application/atom+xml, */*"
        })

        return session

    def _fetch_raw(self, url: str, params: Optional[Dict[str, str]] = None) -> Tuple[requests.Response, int]:
        """Fetch a URL with timing."""
        start_time = datetime.now(timezone.utc)

        try:
            response = self._session.get(url, params=params, timeout=self.timeout, allow_redirects=True)
            response.raise_for_status()

            response_time = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
            return response, response_time

        except requests.Timeout:
            raise FetchError(f"Request timed out after {self.timeout}s")
        except requests.ConnectionError as e:
            raise FetchError(f"Connection error - source unavailable: {e}")
        except requests.HTTPError as e:
            raise FetchError(f"HTTP error {e.response.status_code}")
        except requests.RequestException as e:
            raise FetchError(f"Request failed: {e}")

    def _record(self, url: str, source_type: SourceType, started: datetime, success: bool,
                entries: int = 0, error: Optional[str] = None, response_time_ms: int = 0) -> None:
        self._last_fetch_metadata[url] = FetchMetadata(
            source_url=url,
            source_type=source_type,
            fetch_time=started.isoformat(),
            success=success,
            entries_count=entries,
            error_message=error,
            response_time_ms=response_time_ms,
        )

    # =========================================================================
    # Forecasts
    # =========================================================================

    def fetch_forecast_sync(self) -> Dict[str, Any]:
        """Fetch the OpenWeatherMap forecast payload."""
        started = datetime.now(timezone.utc)
        url = self.weather.url
        params = dict(self.weather.location)
        params.update({"units": self.weather.units, "APPID": self.weather.key})

        try:
            response, response_time = self._fetch_raw(url, params)
            try:
                data = response.json()
            except ValueError:
                raise FetchError("Forecast response is not valid JSON")

            if not isinstance(data, dict) or not isinstance(data.get("list"), list) or not data["list"]:
                raise FetchError("Forecast response has no forecast list")

        except FetchError as e:
            self._record(url, SourceType.FORECAST, started, False, error=str(e))
            logger.error(f"Forecast fetch failed: {e}")
            raise

        self._record(url, SourceType.FORECAST, started, True, len(data["list"]), response_time_ms=response_time)
        logger.info(f"Fetched forecast: {len(data['list'])} entries in {response_time}ms")
        return data

    async def fetch_forecast(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.fetch_forecast_sync)

    # =========================================================================
    # Alerts
    # =========================================================================

    def fetch_alerts_sync(self) -> List[Dict[str, Any]]:
        """Fetch active alerts as a list of nested records."""
        started = datetime.now(timezone.utc)
        url = self.alerts.url

        try:
            response, response_time = self._fetch_raw(url)
            if self.alerts.format == "atom":
                alerts = self._parse_alert_feed(response.content)
            else:
                alerts = self._parse_alert_geojson(response)
        except FetchError as e:
            self._record(url, SourceType.ALERT, started, False, error=str(e))
            logger.error(f"Alert fetch failed: {e}")
            raise

        self._record(url, SourceType.ALERT, started, True, len(alerts), response_time_ms=response_time)
        logger.info(f"Fetched alerts: {len(alerts)} active")
        return alerts

    async def fetch_alerts(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.fetch_alerts_sync)

    def _parse_alert_geojson(self, response: requests.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError:
            raise FetchError("Alert response is not valid JSON")

        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            raise FetchError("Alert response has no features list")
        return [feature for feature in features if isinstance(feature, dict)]

    def _parse_alert_feed(self, content: bytes) -> List[Dict[str, Any]]:
        """Parse a CAP Atom feed into GeoJSON-like records."""
        parsed = feedparser.parse(content)

        if parsed.bozo and not parsed.entries:
            raise FetchError(f"Alert feed parsing failed: {parsed.bozo_exception}")

        return [entry_to_record(entry) for entry in parsed.entries]

    def get_source_health(self) -> Dict[str, FetchMetadata]:
        """Get health status of all sources."""
        return self._last_fetch_metadata.copy()

    def close(self) -> None:
        """Close HTTP session."""
        self._session.close()


def _struct_to_iso(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime(*value[:6], tzinfo=timezone.utc).isoformat()


def entry_to_record(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a feedparser entry into an alert record.

    CAP elements (``cap:event``, ``cap:expires``, ...) land under
    ``properties`` with their prefix removed, so filter paths such as
    ``properties.event`` work for both alert formats.
    """
    properties: Dict[str, Any] = {
        key[len("cap_"):]: value
        for key, value in entry.items()
        if key.startswith("cap_")
    }
    properties.setdefault("headline", entry.get("title"))
    properties.setdefault("description", entry.get("summary"))
    if "areadesc" in properties:
        properties.setdefault("areaDesc", properties["areadesc"])

    return {
        "id": entry.get("id"),
        "title": entry.get("title"),
        "link": entry.get("link"),
        "published": _struct_to_iso(entry.get("published_parsed")),
        "updated": _struct_to_iso(entry.get("updated_parsed")),
        "properties": properties,
    }
