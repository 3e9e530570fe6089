"""
Database module for the weather bot.

Handles SQLite persistence with:
- A ledger of published messages, keyed by content hash, so alerts that
  were already posted are not posted again on the next cycle
- A history of cycle runs (attempts, outcome, late flag) for the status API
"""

import sqlite3
import threading
import logging
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data") / "weatherbot.db"


class Database:
    """
    SQLite database wrapper with thread-safe operations.

    Publishing runs in worker threads, so every statement goes through one
    lock-guarded connection.
    """

    def __init__(self, db_path: str = None) -> None:
        self._db_path = db_path or str(DEFAULT_DB_PATH)
        self._lock = threading.Lock()
        self._conn = None
        self._connect()
        self._init_schema()
        logger.info(f"Database initialized at {self._db_path}")

    def _connect(self) -> None:
        """Establish database connection with WAL mode."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS published_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content_hash TEXT NOT NULL UNIQUE,
                    job TEXT NOT NULL,
                    message TEXT NOT NULL,
                    receipt_id TEXT,
                    published_at TEXT NOT NULL
                )
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS cycle_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job TEXT NOT NULL,
                    late INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    delays_ms TEXT,
                    error TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
            """)

            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_published_job
                ON published_messages(job)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_job
                ON cycle_runs(job)
            """)

    # =========================================================================
    # Published Messages
    # =========================================================================

    def has_published(self, content_hash: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT 1 FROM published_messages WHERE content_hash = ?",
                (content_hash,)
            )
            return cursor.fetchone() is not None

    def record_published(
        self,
        content_hash: str,
        job: str,
        message: str,
        receipt_id: Optional[str] = None
    ) -> bool:
        """Record a published message. Returns False if it was already recorded."""
        with self._lock:
            try:
                self._conn.execute("""
                    INSERT OR IGNORE INTO published_messages
                    (content_hash, job, message, receipt_id, published_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (content_hash, job, message, receipt_id,
                      datetime.now(timezone.utc).isoformat()))

                cursor = self._conn.execute("SELECT changes()")
                return cursor.fetchone()[0] > 0
            except sqlite3.Error as e:
                logger.error(f"Failed to record published message: {e}")
                return False

    def get_recent_messages(self, job: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            if job:
                cursor = self._conn.execute("""
                    SELECT * FROM published_messages
                    WHERE job = ?
                    ORDER BY id DESC
                    LIMIT ?
                """, (job, limit))
            else:
                cursor = self._conn.execute("""
                    SELECT * FROM published_messages
                    ORDER BY id DESC
                    LIMIT ?
                """, (limit,))
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Cycle Runs
    # =========================================================================

    def record_run(
        self,
        job: str,
        state: str,
        attempts: int,
        started_at: str,
        finished_at: Optional[str] = None,
        late: bool = False,
        delays_ms: Optional[List[int]] = None,
        error: Optional[str] = None
    ) -> None:
        with self._lock:
            try:
                self._conn.execute("""
                    INSERT INTO cycle_runs
                    (job, late, state, attempts, delays_ms, error, started_at, finished_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (job, 1 if late else 0, state, attempts,
                      ",".join(str(d) for d in delays_ms or []),
                      error, started_at, finished_at))
            except sqlite3.Error as e:
                logger.error(f"Failed to record cycle run: {e}")

    def get_recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute("""
                SELECT * FROM cycle_runs
                ORDER BY id DESC
                LIMIT ?
            """, (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def get_run_summary(self) -> Dict[str, Any]:
        """Per-job run counts and reliability."""
        with self._lock:
            cursor = self._conn.execute("""
                SELECT
                    job,
                    COUNT(*) AS run_count,
                    SUM(CASE WHEN state = 'success' THEN 1 ELSE 0 END) AS success_count,
                    SUM(late) AS late_count
                FROM cycle_runs
                GROUP BY job
                ORDER BY job
            """)
            summary = {}
            for row in cursor.fetchall():
                runs = row["run_count"] or 0
                successes = row["success_count"] or 0
                summary[row["job"]] = {
                    "run_count": runs,
                    "success_count": successes,
                    "late_count": row["late_count"] or 0,
                    "reliability_percent": round(successes / runs * 100, 1) if runs else 0.0,
                }
            return summary

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")
