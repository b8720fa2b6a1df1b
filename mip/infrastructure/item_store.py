"""
SQLite-backed media item store.

Thread-safe via check_same_thread=False plus an explicit lock. Several
processes may share one database file: every status change is a single
conditional UPDATE whose rowcount tells the caller whether it won.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from mip.domain.errors import StoreError
from mip.domain.models import ACTIVE_STATUSES, TERMINAL_STATUSES, MediaItem, ProcessingStatus

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS media_items (
    id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL UNIQUE,
    file_name TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'NotStarted',
    is_transcribed INTEGER DEFAULT 0,
    transcript_path TEXT,
    created_at TEXT,
    modified_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_media_items_status ON media_items(status);
CREATE INDEX IF NOT EXISTS idx_media_items_file_name ON media_items(file_name);
"""

_TERMINAL_VALUES = tuple(sorted(s.value for s in TERMINAL_STATUSES))
_ACTIVE_VALUES = tuple(sorted(s.value for s in ACTIVE_STATUSES))


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


class MediaItemStore:
    """Media items and their processing status."""

    def __init__(self, db_path: Path, busy_timeout_s: float = 30.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=busy_timeout_s,
                check_same_thread=False,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_s * 1000)}")
            self.conn.executescript(_CREATE_TABLES)
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open item store {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @staticmethod
    def _now() -> str:
        return datetime.now().isoformat()

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> MediaItem:
        return MediaItem(
            id=row["id"],
            file_path=Path(row["file_path"]),
            title=row["title"] or "",
            status=ProcessingStatus(row["status"]),
            is_transcribed=bool(row["is_transcribed"]),
            transcript_path=Path(row["transcript_path"]) if row["transcript_path"] else None,
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Item store query failed: {e}") from e

    def _update(self, sql: str, params=()) -> int:
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
                return cur.rowcount
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreError(f"Item store update failed: {e}") from e

    # ── Items ─────────────────────────────────────────────────────────

    def add(
        self,
        file_path: Union[str, Path],
        title: Optional[str] = None,
        status: ProcessingStatus = ProcessingStatus.NOT_STARTED,
    ) -> MediaItem:
        """Inserts an item for file_path, or returns the existing one."""
        path = Path(file_path).resolve()
        now = self._now()
        self._update(
            """INSERT OR IGNORE INTO media_items
               (id, file_path, file_name, title, status, is_transcribed, created_at, modified_at)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?)""",
            (str(uuid.uuid4()), str(path), path.name, title or path.stem, status.value, now, now),
        )
        item = self.find_by_path(path)
        if item is None:
            raise StoreError(f"Item for {path} vanished after insert")
        return item

    def get(self, media_id: str) -> Optional[MediaItem]:
        rows = self._query("SELECT * FROM media_items WHERE id = ?", (media_id,))
        return self._row_to_item(rows[0]) if rows else None

    def find_by_path(self, file_path: Union[str, Path]) -> Optional[MediaItem]:
        rows = self._query(
            "SELECT * FROM media_items WHERE file_path = ?", (str(Path(file_path).resolve()),)
        )
        return self._row_to_item(rows[0]) if rows else None

    def find_by_filename(self, file_name: str) -> Optional[MediaItem]:
        rows = self._query(
            "SELECT * FROM media_items WHERE file_name = ? ORDER BY created_at LIMIT 1", (file_name,)
        )
        return self._row_to_item(rows[0]) if rows else None

    def list_items(self, status: Optional[ProcessingStatus] = None, limit: Optional[int] = None) -> List[MediaItem]:
        sql = "SELECT * FROM media_items"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_item(r) for r in self._query(sql, params)]

    def get_items_by_status(self, status: ProcessingStatus) -> List[MediaItem]:
        rows = self._query(
            "SELECT * FROM media_items WHERE status = ? ORDER BY created_at", (status.value,)
        )
        return [self._row_to_item(r) for r in rows]

    # ── Status transitions ────────────────────────────────────────────

    def try_claim(self, media_id: str, expected: ProcessingStatus, new: ProcessingStatus) -> bool:
        """Compare-and-swap on the status column; True only for the winner."""
        if expected.is_terminal:
            return False
        count = self._update(
            "UPDATE media_items SET status = ?, modified_at = ? WHERE id = ? AND status = ?",
            (new.value, self._now(), media_id, expected.value),
        )
        return count == 1

    def set_status(self, media_id: str, status: ProcessingStatus) -> bool:
        """Unconditional write, except that a terminal status is never left."""
        count = self._update(
            f"UPDATE media_items SET status = ?, modified_at = ? "
            f"WHERE id = ? AND status NOT IN ({_placeholders(_TERMINAL_VALUES)})",
            (status.value, self._now(), media_id, *_TERMINAL_VALUES),
        )
        if count != 1:
            logger.debug(f"set_status ignored for {media_id} -> {status.value}")
        return count == 1

    def update_phase(self, media_id: str, phase: ProcessingStatus) -> bool:
        """Records a transcription sub-phase while the item is being processed."""
        if not phase.is_active:
            raise ValueError(f"{phase.value} is not a processing phase")
        count = self._update(
            f"UPDATE media_items SET status = ?, modified_at = ? "
            f"WHERE id = ? AND status IN ({_placeholders(_ACTIVE_VALUES)})",
            (phase.value, self._now(), media_id, *_ACTIVE_VALUES),
        )
        return count == 1

    def save_transcript_reference(self, media_id: str, transcript_path: Path) -> bool:
        count = self._update(
            "UPDATE media_items SET is_transcribed = 1, transcript_path = ?, modified_at = ? WHERE id = ?",
            (str(transcript_path), self._now(), media_id),
        )
        return count == 1
