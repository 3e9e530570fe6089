"""Tests for settings loading and logging setup."""

import json
import logging

import pydantic
import pytest

from weatherbot.config import AppInfo, LogConfig, Settings, configure_logging, load_settings
from weatherbot.retry import DEFAULT_NON_RETRYABLE_CODES, RetryPolicy


ENV_VARS = ["WEATHERBOT_CONFIG", "LOG_LEVEL", "WEATHERBOT_STATS_PATH", "WEATHERBOT_DB_PATH",
            "WEATHERBOT_PUBLISH_TOKEN"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestLoadSettings:
    def test_missing_file_gives_dry_run_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.json"))
        assert settings.publisher.dry_run
        assert settings.schedule.forecast_cron == "0 */2 * * *"
        assert settings.schedule.grace_minutes == 7
        assert set(settings.publisher.non_retryable_codes) == DEFAULT_NON_RETRYABLE_CODES
        assert settings.publisher.local_station_id is None
        assert settings.schedule.repost_cron == "30 */1 * * *"
        assert settings.schedule.repost_window_minutes == 60

    def test_reads_json_file(self, tmp_path):
        path = write_config(tmp_path, {
            "weather": {"key": "abc", "location": {"id": "4381982"}},
            "alerts": {
                "app": {"name": "columbiaweather", "contact": "ops@example.com"},
                "filters": [{"restriction": "has", "path": "properties.replacedBy", "keep": False}],
            },
            "retry": {"max_attempts": 5, "delay_increment_ms": 1000},
            "extra": {"disabled": True},
        })

        settings = load_settings(str(path))

        assert settings.weather.location == {"id": "4381982"}
        assert settings.alerts.filters[0]["restriction"] == "has"
        assert settings.retry.to_policy() == RetryPolicy(max_attempts=5, initial_delay_ms=0, delay_increment_ms=1000)
        assert settings.extra.disabled

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"weather": {"key": "from-env"}})
        monkeypatch.setenv("WEATHERBOT_CONFIG", str(path))
        assert load_settings().weather.key == "from-env"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("WEATHERBOT_STATS_PATH", "/var/lib/weatherbot/stats.json")
        monkeypatch.setenv("WEATHERBOT_DB_PATH", "/var/lib/weatherbot/bot.db")
        monkeypatch.setenv("WEATHERBOT_PUBLISH_TOKEN", "tok")

        settings = load_settings(str(write_config(tmp_path, {"log": {"level": "WARNING"}})))

        assert settings.log.level == "DEBUG"
        assert settings.paths.stats == "/var/lib/weatherbot/stats.json"
        assert settings.paths.database == "/var/lib/weatherbot/bot.db"
        assert settings.publisher.token == "tok"

    @pytest.mark.parametrize("data", [
        {"retry": {"max_attempts": 0}},
        {"retry": {"initial_delay_ms": -1}},
        {"alerts": {"format": "rss"}},
        {"alerts": {"filters": {"restriction": "has"}}},
    ])
    def test_invalid_settings(self, data):
        with pytest.raises(pydantic.ValidationError):
            Settings.model_validate(data)


def test_user_agent():
    assert AppInfo(name="bot", version="1").user_agent() == "bot/1"
    assert AppInfo(name="bot", version="1", website="https://x.test", contact="a@x.test").user_agent() == \
        "bot/1 (https://x.test, a@x.test)"


def test_configure_logging_writes_combined_and_error_logs(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging(LogConfig(log_dir=str(tmp_path / "logs"), level="info"))
        logging.getLogger("weatherbot.test").info("info line")
        logging.getLogger("weatherbot.test").error("error line")
        for handler in root.handlers:
            handler.flush()

        combined = (tmp_path / "logs" / "combined.log").read_text()
        errors = (tmp_path / "logs" / "error.log").read_text()
        assert "info line" in combined and "error line" in combined
        assert "error line" in errors and "info line" not in errors
        assert " - weatherbot.test - ERROR - error line" in errors
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
