"""Shared fixtures and fake collaborators for the weather bot tests."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from weatherbot.errors import TransientError
from weatherbot.publisher import Receipt, check_length
from weatherbot.stats import StatsRecord, StatsStore


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_alert(alert_id="urn:alert:1", event="Tornado Warning", **properties):
    props = {
        "id": alert_id,
        "event": event,
        "headline": f"{event} issued for Boone County",
        "areaDesc": "Boone, MO",
        "severity": "Extreme",
        "sent": (NOW - timedelta(hours=1)).isoformat(),
        "expires": (NOW + timedelta(hours=2)).isoformat(),
        "geocode": {"UGC": ["MOC019", "MOZ041"]},
    }
    props.update(properties)
    return {"id": alert_id, "type": "Feature", "properties": props}


def make_forecast(speed=4.2, humidity=70):
    base = int(NOW.timestamp())
    entries = []
    for i in range(3):
        entries.append({
            "dt": base + i * 3 * 3600,
            "main": {"temp_min": 18.4, "temp_max": 23.6, "humidity": humidity,
                     "pressure": 1012, "grnd_level": 990},
            "weather": [{"id": 800}],
            "wind": {"speed": speed, "deg": 180},
            "clouds": {"all": 20},
        })
    return {"list": entries, "city": {"timezone": -18000}}


# ── Fake collaborators ────────────────────────────────────────────────────────

class FakeFetcher:
    def __init__(self, forecast=None, alerts=None, failures=0):
        self.forecast = forecast if forecast is not None else make_forecast()
        self.alerts = alerts if alerts is not None else []
        self.failures = failures
        self.calls = 0
        self.closed = False

    def _maybe_fail(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientError("source unavailable")

    async def fetch_forecast(self):
        self._maybe_fail()
        return self.forecast

    async def fetch_alerts(self):
        self._maybe_fail()
        return list(self.alerts)

    def get_source_health(self):
        return {}

    def close(self):
        self.closed = True


class FakePublisher:
    """Fails the first ``failures`` calls with ``error``, then succeeds."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or TransientError("publish timed out")
        self.calls = 0
        self.sent = []
        self.reposts = []
        self.closed = False

    async def publish(self, message):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        check_length(message)
        self.sent.append(message)
        return Receipt(id=str(self.calls), message=message)

    async def repost_recent(self, account_id, window):
        self.reposts.append((account_id, window))
        return [f"{account_id}-1"]

    def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def stats(tmp_path):
    record = StatsRecord(last_update=NOW, last_alert_update=NOW)
    return StatsStore(str(tmp_path / "stats.json"), record)


@pytest.fixture
def rng():
    return random.Random(1234)
