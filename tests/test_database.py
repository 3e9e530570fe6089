"""Tests for the published-message ledger and cycle run history."""

import pytest

from weatherbot.database import Database


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


class TestPublishedMessages:
    def test_record_once(self, db):
        assert not db.has_published("abc")
        assert db.record_published("abc", "alerts", "⚠️ Tornado Warning", "1")
        assert db.has_published("abc")
        assert not db.record_published("abc", "alerts", "⚠️ Tornado Warning", "2")

    def test_recent_messages_by_job(self, db):
        db.record_published("h1", "forecast", "Forecast 1")
        db.record_published("h2", "alerts", "Alert 1")
        db.record_published("h3", "forecast", "Forecast 2")

        assert [m["message"] for m in db.get_recent_messages()] == ["Forecast 2", "Alert 1", "Forecast 1"]
        assert [m["message"] for m in db.get_recent_messages(job="forecast", limit=1)] == ["Forecast 2"]


class TestCycleRuns:
    def test_record_and_list_runs(self, db):
        db.record_run("forecast", "exhausted", 3, "2024-05-01T12:00:00+00:00", "2024-05-01T12:07:00+00:00",
                      late=True, delays_ms=[0, 131072, 262144], error="TransientError: down")

        run = db.get_recent_runs()[0]
        assert run["job"] == "forecast"
        assert run["late"] == 1
        assert run["delays_ms"] == "0,131072,262144"
        assert run["error"] == "TransientError: down"

    def test_summary(self, db):
        for state in ("success", "success", "exhausted", "success"):
            db.record_run("forecast", state, 1, "2024-05-01T12:00:00+00:00")
        db.record_run("alerts", "success", 1, "2024-05-01T12:00:00+00:00", late=True)

        summary = db.get_run_summary()

        assert summary["forecast"] == {
            "run_count": 4, "success_count": 3, "late_count": 0, "reliability_percent": 75.0,
        }
        assert summary["alerts"]["late_count"] == 1


def test_file_database_creates_parent_directory(tmp_path):
    path = tmp_path / "data" / "weatherbot.db"
    database = Database(str(path))
    try:
        database.record_published("abc", "alerts", "hi")
    finally:
        database.close()
    assert path.exists()
    reopened = Database(str(path))
    try:
        assert reopened.has_published("abc")
    finally:
        reopened.close()
