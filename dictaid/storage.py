"""SQLite backed transcription history and recording retention."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Union

from .config import APP_DIR
from .models import HistoryRecord, TranscriptionDetails

DB_PATH = APP_DIR / "history.db"
RECORDINGS_DIR = APP_DIR / "recordings"
SCHEMA_VERSION = 1
MAX_HISTORY_ITEMS = 100
RETENTION_WINDOW = timedelta(hours=1)
RECORDING_PREFIX = "recording-"
RECORDING_SUFFIX = ".wav"

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HistoryStore:
    """Bounded, most-recent-first list of past transcriptions."""

    def __init__(self, db_path: Path = DB_PATH, limit: int = MAX_HISTORY_ITEMS) -> None:
        if limit < 1:
            raise StorageError("History limit must be at least 1")
        self.db_path = db_path
        self.limit = limit
        self._ensure_initialised()

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    text TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    language TEXT NOT NULL,
                    recording_path TEXT,
                    transcribed INTEGER NOT NULL,
                    details TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            cur = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",))
            row = cur.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO metadata(key, value) VALUES(?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )

    def append(
        self,
        text: str,
        language: str,
        recording_path: Optional[Union[str, Path]] = None,
        transcribed: bool = True,
        details: Optional[TranscriptionDetails] = None,
        timestamp: Optional[datetime] = None,
    ) -> HistoryRecord:
        record_id = uuid.uuid4().hex
        stamp = (timestamp or _now()).isoformat()
        details_json = json.dumps(asdict(details)) if details is not None else None
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO history(id, text, timestamp, language, recording_path, transcribed, details)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    text,
                    stamp,
                    language,
                    str(recording_path) if recording_path else None,
                    int(transcribed),
                    details_json,
                ),
            )
            conn.execute(
                """
                DELETE FROM history WHERE seq NOT IN (
                    SELECT seq FROM history ORDER BY seq DESC LIMIT ?
                )
                """,
                (self.limit,),
            )
        return self.get(record_id)

    def list_records(self) -> Iterator[HistoryRecord]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM history ORDER BY seq DESC").fetchall()
        for row in rows:
            yield _row_to_record(row)

    def get(self, record_id: str) -> HistoryRecord:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cur = conn.execute("SELECT * FROM history WHERE id = ?", (record_id,))
            row = cur.fetchone()
        if row is None:
            raise StorageError(f"History record {record_id} not found")
        return _row_to_record(row)

    def mark_transcribed(
        self,
        record_id: str,
        text: str,
        details: Optional[TranscriptionDetails] = None,
    ) -> HistoryRecord:
        record = self.get(record_id)
        details_json = json.dumps(asdict(details)) if details is not None else None
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE history SET text = ?, transcribed = 1, details = COALESCE(?, details) WHERE id = ?",
                (text, details_json, record.id),
            )
        return self.get(record_id)

    def delete(self, record_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM history WHERE id = ?", (record_id,))
        if cur.rowcount == 0:
            raise StorageError(f"History record {record_id} not found")

    def clear(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM history")
        return cur.rowcount

    def last_untranscribed(self) -> Optional[HistoryRecord]:
        for record in self.list_records():
            if not record.transcribed and record.recording_path:
                return record
        return None

    def recordings_to_keep(self, now: Optional[datetime] = None) -> Set[str]:
        """Paths still referenced by untranscribed or recent records."""

        cutoff = (now or _now()) - RETENTION_WINDOW
        keep: Set[str] = set()
        for record in self.list_records():
            if not record.recording_path:
                continue
            if not record.transcribed or record.timestamp > cutoff:
                keep.add(record.recording_path)
        return keep


class RecordingTracker:
    """Registry of recordings owned by requests that have not finished yet."""

    def __init__(self) -> None:
        self._paths: Set[str] = set()
        self._lock = threading.Lock()

    @contextmanager
    def track(self, path: Path) -> Iterator[Path]:
        key = str(path)
        with self._lock:
            self._paths.add(key)
        try:
            yield path
        finally:
            with self._lock:
                self._paths.discard(key)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._paths)


def new_recording_path(directory: Path = RECORDINGS_DIR, now: Optional[datetime] = None) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    millis = int((now or _now()).timestamp() * 1000)
    return directory / f"{RECORDING_PREFIX}{millis}{RECORDING_SUFFIX}"


def sweep_recordings(
    directory: Path,
    keep: Iterable[str],
    in_flight: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> List[Path]:
    """Delete orphaned recordings older than the retention window.

    Best effort: individual failures are logged and skipped.
    """

    if not directory.exists():
        return []
    protected = {str(p) for p in keep} | {str(p) for p in in_flight}
    cutoff = ((now or _now()) - RETENTION_WINDOW).timestamp()
    removed: List[Path] = []
    for path in directory.iterdir():
        if not (path.name.startswith(RECORDING_PREFIX) and path.name.endswith(RECORDING_SUFFIX)):
            continue
        if str(path) in protected:
            continue
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except OSError as exc:
            logger.warning("Could not remove old recording %s: %s", path, exc)
            continue
        logger.info("Cleaned up old recording: %s", path.name)
        removed.append(path)
    return removed


def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
    details = json.loads(row["details"]) if row["details"] else None
    return HistoryRecord(
        id=row["id"],
        text=row["text"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        language=row["language"],
        recording_path=row["recording_path"],
        transcribed=bool(row["transcribed"]),
        details=TranscriptionDetails(**details) if details else None,
    )
