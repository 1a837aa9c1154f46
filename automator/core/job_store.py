"""
SQLite-backed job store for VideoIntelAutomator.
Holds the durable run state (key-value) plus per-video and per-segment
result history. Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from automator.core.constants import DB_PATH, VideoStatus
from automator.core.models import RunState, VideoResult, SegmentResult

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

RUN_STATE_KEY = "run_state"
TOTAL_PROCESSED_KEY = "total_processed"

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS kv_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS video_results (
    run_id TEXT NOT NULL,
    video_id TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'RUNNING',
    segment_count INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    started_at TEXT,
    completed_at TEXT,
    PRIMARY KEY (run_id, video_id)
);

CREATE INDEX IF NOT EXISTS idx_video_results_status ON video_results(status);

CREATE TABLE IF NOT EXISTS segment_results (
    run_id TEXT NOT NULL,
    video_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    start_sec REAL,
    end_sec REAL,
    status TEXT DEFAULT 'done',
    attempts INTEGER DEFAULT 0,
    report_saved INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    PRIMARY KEY (run_id, video_id, idx)
);
"""


class JobStore:
    """Durable, process-wide state for the orchestrator."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ── Key-value ─────────────────────────────────────────────────────

    def get(self, key: str, default=None):
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM kv_state WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return default
        try:
            return json.loads(row['value'])
        except json.JSONDecodeError:
            logger.warning("Corrupt value for key %r — ignoring", key)
            return default

    def set(self, key: str, value):
        # Full-document upsert: repeating a write is harmless.
        payload = json.dumps(value)
        with self._lock:
            self.conn.execute(
                """INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, payload, self._now()),
            )
            self.conn.commit()

    def delete(self, key: str):
        with self._lock:
            self.conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
            self.conn.commit()

    # ── Run state ─────────────────────────────────────────────────────

    def load_run_state(self) -> RunState | None:
        data = self.get(RUN_STATE_KEY)
        if not data:
            return None
        try:
            return RunState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unreadable run state (%s) — discarding", e)
            return None

    def save_run_state(self, state: RunState):
        self.set(RUN_STATE_KEY, state.to_dict())

    def clear_run_state(self):
        self.delete(RUN_STATE_KEY)

    # ── Counters ──────────────────────────────────────────────────────

    def total_processed(self) -> int:
        return int(self.get(TOTAL_PROCESSED_KEY, 0))

    def increment_total_processed(self, count: int = 1) -> int:
        with self._lock:
            total = self.total_processed() + count
            self.set(TOTAL_PROCESSED_KEY, total)
        return total

    # ── Video results ─────────────────────────────────────────────────

    def start_video(self, run_id: str, video_id: str, title: str | None = None):
        now = self._now()
        with self._lock:
            self.conn.execute(
                """INSERT INTO video_results (run_id, video_id, title, status, started_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(run_id, video_id) DO UPDATE SET status = excluded.status""",
                (run_id, video_id, title, VideoStatus.RUNNING, now),
            )
            self.conn.commit()

    def finish_video(self, run_id: str, video_id: str, status: str,
                     segment_count: int | None = None,
                     error_code: str | None = None,
                     error_message: str | None = None):
        fields = {
            'status': status,
            'error_code': error_code,
            'error_message': error_message[:2000] if error_message else None,
            'completed_at': self._now(),
        }
        if segment_count is not None:
            fields['segment_count'] = segment_count
        sets = ', '.join(f"{k} = ?" for k in fields)
        vals = list(fields.values()) + [run_id, video_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE video_results SET {sets} WHERE run_id = ? AND video_id = ?", vals
            )
            self.conn.commit()

    def get_video_results(self, run_id: str) -> list[VideoResult]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM video_results WHERE run_id = ? ORDER BY started_at, rowid",
                (run_id,),
            ).fetchall()
        return [VideoResult(**dict(r)) for r in rows]

    def get_video_result(self, run_id: str, video_id: str) -> VideoResult | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM video_results WHERE run_id = ? AND video_id = ?",
                (run_id, video_id),
            ).fetchone()
        return VideoResult(**dict(row)) if row else None

    # ── Segment results ───────────────────────────────────────────────

    def record_segment(self, result: SegmentResult):
        with self._lock:
            self.conn.execute(
                """INSERT OR REPLACE INTO segment_results
                   (run_id, video_id, idx, start_sec, end_sec, status, attempts,
                    report_saved, error_code, error_message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (result.run_id, result.video_id, result.idx, result.start_sec,
                 result.end_sec, result.status, result.attempts, result.report_saved,
                 result.error_code,
                 result.error_message[:2000] if result.error_message else None),
            )
            self.conn.commit()

    def get_segment_results(self, run_id: str, video_id: str) -> list[SegmentResult]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM segment_results WHERE run_id = ? AND video_id = ? ORDER BY idx",
                (run_id, video_id),
            ).fetchall()
        return [SegmentResult(**dict(r)) for r in rows]
