import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from mip.domain.models import MediaItem, MediaTranscript, ProcessingStatus
from mip.infrastructure.item_store import MediaItemStore


class MediaService:
    """Media import and update operations on top of the item store.

    Transcripts are written as ``{media_id}.json`` under ``transcripts_dir``;
    that is the file the transcript indexer reads back.
    """

    def __init__(self, store: MediaItemStore, transcripts_dir: Path):
        self.store = store
        self.transcripts_dir = Path(transcripts_dir)
        self.logger = logging.getLogger(__name__)

    def import_media(self, file_path: Union[str, Path]) -> Optional[MediaItem]:
        path = Path(file_path)
        if not path.is_file():
            self.logger.warning(f"Cannot import missing file: {path}")
            return None
        existing = self.store.find_by_path(path)
        if existing is not None:
            return existing
        item = self.store.add(path)
        self.logger.info(f"IMPORTED: {path.name} -> {item.id}")
        return item

    def enqueue(self, media_id: str) -> bool:
        """NotStarted -> Queued; False when the item is already queued or further along."""
        queued = self.store.try_claim(media_id, ProcessingStatus.NOT_STARTED, ProcessingStatus.QUEUED)
        if queued:
            self.logger.info(f"QUEUED: {media_id}")
        return queued

    def ingest(self, file_path: Union[str, Path]) -> Optional[MediaItem]:
        """Imports a file and queues it; returns the item as stored afterwards."""
        item = self.import_media(file_path)
        if item is None:
            return None
        self.enqueue(item.id)
        return self.store.get(item.id)

    def find_by_filename(self, file_name: str) -> Optional[MediaItem]:
        return self.store.find_by_filename(file_name)

    def transcript_path(self, media_id: str) -> Path:
        return self.transcripts_dir / f"{media_id}.json"

    def save_transcript(self, media_id: str, transcript: MediaTranscript) -> bool:
        target = self.transcript_path(media_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(transcript.model_dump_json(indent=2))
            os.replace(tmp, target)
        except OSError as e:
            self.logger.error(f"Failed to write transcript for {media_id}: {e}")
            return False
        saved = self.store.save_transcript_reference(media_id, target)
        if not saved:
            self.logger.warning(f"Transcript written but item {media_id} not found")
        return saved

    def attach_transcript(self, media_id: str, transcript_path: Path) -> bool:
        """Links an externally produced transcript file to an existing item."""
        if self.store.get(media_id) is None:
            self.logger.warning(f"Transcript {Path(transcript_path).name} has no matching item")
            return False
        return self.store.save_transcript_reference(media_id, Path(transcript_path))

    def load_transcript(self, media_id: str) -> Optional[MediaTranscript]:
        path = self.transcript_path(media_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return MediaTranscript.model_validate(json.load(f))
        except FileNotFoundError:
            return None

    def update_phase(self, media_id: str, phase: ProcessingStatus) -> bool:
        return self.store.update_phase(media_id, phase)

    def mark_status(self, media_id: str, status: ProcessingStatus) -> bool:
        return self.store.set_status(media_id, status)
