"""
Delivery statistics for the weather bot.

Stores the time of the last successful forecast post, the last successful
alert check and a counter per kind of "extra" statement posted. The record
is shared by the forecast and alert jobs and is written to a JSON file on
every change, so a restarted process can tell whether a scheduled cycle was
missed while it was down (e.g. the host was asleep).
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_STATS_PATH = Path("data") / "stats.json"

TIMESTAMP_FIELDS = {
    "last_update": "lastUpdate",
    "last_alert_update": "lastAlertUpdate",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class StatsRecord:
    """Last-success timestamps and delivery counters."""
    last_update: datetime = field(default_factory=utcnow)
    last_alert_update: datetime = field(default_factory=utcnow)
    counters: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastUpdate": self.last_update.isoformat(),
            "lastAlertUpdate": self.last_alert_update.isoformat(),
            "counters": dict(self.counters),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatsRecord":
        counters = data.get("counters") or {}
        return cls(
            last_update=_parse_timestamp(data["lastUpdate"]),
            last_alert_update=_parse_timestamp(data["lastAlertUpdate"]),
            counters={str(k): int(v) for k, v in counters.items()},
        )


class StatsStore:
    """
    StatsRecord wrapper that saves the whole record on every write.

    Writes go through ``set`` or ``increment``. A failed save is logged and
    otherwise ignored; the in-memory record stays authoritative.

    Every write blocks on file I/O. Async callers run it with
    ``asyncio.to_thread``; the lock makes that safe across threads.
    """

    def __init__(self, path: Optional[str] = None, record: Optional[StatsRecord] = None) -> None:
        self._path = Path(path or os.getenv("WEATHERBOT_STATS_PATH", str(DEFAULT_STATS_PATH)))
        self._record = record or StatsRecord()
        self._lock = threading.Lock()

    @classmethod
    def load_or_create(cls, path: Optional[str] = None) -> "StatsStore":
        """Load stats from ``path``, or create them at the current time."""
        store = cls(path)
        if not store.path.exists():
            logger.info(f"No stats found at {store.path}, starting fresh")
            store.save()
            return store

        try:
            data = json.loads(store.path.read_text(encoding="utf-8"))
            store._record = StatsRecord.from_dict(data)
            logger.info(f"Loaded stats from {store.path}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Stats file {store.path} unreadable, starting fresh: {e}")
            store.save()
        return store

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_update(self) -> datetime:
        return self._record.last_update

    @last_update.setter
    def last_update(self, value: datetime) -> None:
        self.set("last_update", value)

    @property
    def last_alert_update(self) -> datetime:
        return self._record.last_alert_update

    @last_alert_update.setter
    def last_alert_update(self, value: datetime) -> None:
        self.set("last_alert_update", value)

    @property
    def counters(self) -> Dict[str, int]:
        """Read-only copy; use ``increment`` to change a counter."""
        return dict(self._record.counters)

    def set(self, name: str, value: Any) -> None:
        """Write one field and save the record."""
        if name in TIMESTAMP_FIELDS:
            if not isinstance(value, datetime):
                raise TypeError(f"{name} must be a datetime")
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
        elif name != "counters":
            raise AttributeError(f"Unknown stats field: {name}")
        with self._lock:
            setattr(self._record, name, value)
        self.save()

    def increment(self, counter: str, amount: int = 1) -> int:
        """Bump a named counter and save the record."""
        with self._lock:
            value = self._record.counters.get(counter, 0) + amount
            self._record.counters[counter] = value
        self.save()
        return value

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._record.to_dict()

    def save(self) -> bool:
        """Write the record to disk. Returns False if the write failed."""
        try:
            self._write()
            return True
        except PersistenceError as e:
            logger.error(f"Failed to save stats: {e}")
            return False

    def _write(self) -> None:
        with self._lock:
            try:
                payload = json.dumps(self._record.to_dict(), indent=2)
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
                tmp_path.write_text(payload, encoding="utf-8")
                os.replace(tmp_path, self._path)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(f"{self._path}: {e}") from e
