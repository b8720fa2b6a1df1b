"""
Transcript search index.

Segments of each saved transcript are copied into a SQLite table keyed by
media id; re-indexing an item replaces its rows.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from mip.domain.models import OperationResult
from mip.domain.transcripts import parse_transcript_document
from mip.infrastructure.item_store import MediaItemStore

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS transcript_segments (
    media_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    text TEXT NOT NULL,
    start_sec REAL,
    end_sec REAL,
    speaker TEXT,
    PRIMARY KEY (media_id, idx)
);

CREATE INDEX IF NOT EXISTS idx_transcript_segments_media ON transcript_segments(media_id);
"""


class SearchHit(BaseModel):
    media_id: str
    text: str
    start: float = 0.0
    end: float = 0.0
    speaker: Optional[str] = None


class TranscriptIndexer:
    def __init__(self, db_path: Path, store: MediaItemStore, transcripts_dir: Path, busy_timeout_s: float = 30.0):
        self.store = store
        self.transcripts_dir = Path(transcripts_dir)
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), timeout=busy_timeout_s, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_CREATE_TABLES)
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _transcript_file(self, media_id: str) -> Path:
        item = self.store.get(media_id)
        if item is not None and item.transcript_path is not None:
            return item.transcript_path
        return self.transcripts_dir / f"{media_id}.json"

    def index_media(self, media_id: str) -> OperationResult:
        path = self._transcript_file(media_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return OperationResult(success=False, error=f"No transcript for {media_id}")
        except (OSError, ValueError) as e:
            return OperationResult(success=False, error=f"Unreadable transcript {path.name}: {e}")

        parsed = parse_transcript_document(data)
        if not parsed.success:
            return OperationResult(success=False, error=parsed.error)

        rows = [
            (media_id, idx, seg.text, seg.start, seg.end, seg.speaker)
            for idx, seg in enumerate(parsed.segments)
            if seg.text.strip()
        ]
        with self._lock:
            try:
                self.conn.execute("DELETE FROM transcript_segments WHERE media_id = ?", (media_id,))
                self.conn.executemany(
                    """INSERT INTO transcript_segments (media_id, idx, text, start_sec, end_sec, speaker)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    rows,
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                return OperationResult(success=False, error=f"Index write failed: {e}")
        logger.info(f"INDEXED: {media_id} ({len(rows)} segments)")
        return OperationResult(success=True, output_path=path)

    def remove(self, media_id: str) -> int:
        with self._lock:
            cur = self.conn.execute("DELETE FROM transcript_segments WHERE media_id = ?", (media_id,))
            self.conn.commit()
            return cur.rowcount

    def search(self, query: str, limit: int = 20) -> List[SearchHit]:
        query = query.strip()
        if not query:
            return []
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self.conn.execute(
                """SELECT media_id, text, start_sec, end_sec, speaker FROM transcript_segments
                   WHERE text LIKE ? ESCAPE '\\' ORDER BY media_id, idx LIMIT ?""",
                (f"%{escaped}%", limit),
            ).fetchall()
        return [
            SearchHit(media_id=r["media_id"], text=r["text"], start=r["start_sec"] or 0.0,
                      end=r["end_sec"] or 0.0, speaker=r["speaker"])
            for r in rows
        ]
