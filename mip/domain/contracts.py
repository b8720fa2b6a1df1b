"""Narrow contracts for the collaborators the pipeline drives.

Concrete implementations live in ``mip.infrastructure``; the pipeline layer only
depends on these shapes, so tests can substitute simple fakes.
"""

from pathlib import Path
from typing import List, Optional, Protocol

from .cancellation import CancellationToken
from .events import TranscriptionProgressSink
from .models import (
    MediaItem,
    MediaTranscript,
    OperationResult,
    ProcessingStatus,
    TranscriptionResult,
    VerificationRecord,
)


class ItemStore(Protocol):
    def get(self, media_id: str) -> Optional[MediaItem]: ...

    def get_items_by_status(self, status: ProcessingStatus) -> List[MediaItem]: ...

    def try_claim(self, media_id: str, expected: ProcessingStatus, new: ProcessingStatus) -> bool: ...

    def set_status(self, media_id: str, status: ProcessingStatus) -> bool: ...


class MediaCatalog(Protocol):
    def find_by_filename(self, file_name: str) -> Optional[MediaItem]: ...

    def import_media(self, file_path: Path) -> Optional[MediaItem]: ...

    def save_transcript(self, media_id: str, transcript: MediaTranscript) -> bool: ...

    def update_phase(self, media_id: str, phase: ProcessingStatus) -> bool: ...

    def mark_status(self, media_id: str, status: ProcessingStatus) -> bool: ...


class Transcriber(Protocol):
    def transcribe(
        self,
        file_path: Path,
        output_path: Path,
        on_progress: Optional[TranscriptionProgressSink],
        token: CancellationToken,
    ) -> TranscriptionResult: ...


class ThumbnailExtractor(Protocol):
    def extract(self, file_path: Path, output_path: Path, token: CancellationToken) -> OperationResult: ...


class ContentIndexer(Protocol):
    def index_media(self, media_id: str) -> OperationResult: ...


class VerificationLedger(Protocol):
    def compute_hash(self, file_path: Path) -> str: ...

    def is_already_processed(self, file_path: Path, content_hash: str) -> bool: ...

    def cached_output(self, file_path: Path, content_hash: str) -> Optional[Path]: ...

    def expected_output_path(self, file_path: Path, content_hash: Optional[str] = None) -> Path: ...

    def register(
        self,
        file_path: Path,
        content_hash: str,
        external_job_id: str,
        output_path: Path,
        status: str,
    ) -> None: ...

    def update_status(self, content_hash: str, external_job_id: str, status: str, is_verified: bool) -> None: ...

    def load(self, content_hash: str) -> Optional[VerificationRecord]: ...
