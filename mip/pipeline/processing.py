"""Per-item processing pipeline.

Stages run in a fixed order: thumbnail extraction (best-effort), transcription
(critical) and indexing (best-effort). Progress is reported through a single
sink at fixed checkpoints and always ends at 100, on success and on failure.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from mip.domain.cancellation import CancellationToken
from mip.domain.contracts import (
    ContentIndexer,
    MediaCatalog,
    ThumbnailExtractor,
    Transcriber,
    VerificationLedger,
)
from mip.domain.errors import OperationCancelled, TranscriptionError
from mip.domain.events import ProgressSink, TranscriptionProgress
from mip.domain.models import MediaTranscript, ProcessingStatus, TranscriptionResult
from mip.domain.transcripts import parse_transcript_document
from mip.pipeline.progress import ProgressTracker

INIT_PERCENT = 10.0
THUMBNAIL_PERCENT = 30.0
TRANSCRIBED_PERCENT = 80.0
INDEXING_PERCENT = 85.0
FINALIZING_PERCENT = 95.0


class ProcessingPipeline:
    """Runs one media file through thumbnail, transcription and indexing.

    A pipeline instance handles exactly one item: call ``initialize`` with the
    file path, then ``run``. The returned status is also written to the item
    through the media catalog; a cancelled run writes ``Cancelled`` and
    re-raises OperationCancelled.

    Args:
        catalog: Media import/update collaborator.
        transcriber: Transcription engine (critical stage).
        verification: Content-hash ledger used to skip verified work.
        thumbnails: Optional thumbnail extractor; None disables the stage.
        indexer: Optional content indexer; None disables the stage.
        thumbnail_dir_name: Folder beside the media file receiving thumbnails.
    """

    def __init__(
        self,
        catalog: MediaCatalog,
        transcriber: Transcriber,
        verification: VerificationLedger,
        thumbnails: Optional[ThumbnailExtractor] = None,
        indexer: Optional[ContentIndexer] = None,
        thumbnail_dir_name: str = "thumbnails",
    ):
        self.catalog = catalog
        self.transcriber = transcriber
        self.verification = verification
        self.thumbnails = thumbnails
        self.indexer = indexer
        self.thumbnail_dir_name = thumbnail_dir_name
        self.logger = logging.getLogger(__name__)

        self._file_path: Optional[Path] = None
        self._media_id: Optional[str] = None
        self._status = ProcessingStatus.NOT_STARTED
        self._error: Optional[str] = None
        self._initialized = False

    @property
    def status(self) -> ProcessingStatus:
        return self._status

    @property
    def media_id(self) -> Optional[str]:
        return self._media_id

    @property
    def error(self) -> Optional[str]:
        return self._error

    def initialize(self, file_path: Union[str, Path], media_id: Optional[str] = None) -> bool:
        """Checks the file and resolves its MediaItem.

        A missing file fails the pipeline. Failing to resolve or import the
        item is logged only; the run then skips the item-bound writes.
        """
        path = Path(file_path)
        if not path.is_file():
            self._status = ProcessingStatus.FAILED
            self._error = f"File not found: {path}"
            self.logger.error(f"PIPELINE_INIT_FAILED: {self._error}")
            if media_id:
                self._media_id = media_id
                self._write_status(ProcessingStatus.FAILED)
            return False

        self._file_path = path
        self._media_id = media_id
        if self._media_id is None:
            try:
                item = self.catalog.find_by_filename(path.name)
                if item is None:
                    item = self.catalog.import_media(path)
                if item is not None:
                    self._media_id = item.id
                else:
                    self.logger.warning(f"Could not resolve media item for {path.name}")
            except Exception as e:
                self.logger.warning(f"Media item lookup failed for {path.name}: {e}")

        self._status = ProcessingStatus.PROCESSING
        self._initialized = True
        self.logger.info(f"PIPELINE_INIT: {path.name} media_id={self._media_id}")
        return True

    def run(
        self,
        progress_sink: Optional[ProgressSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> ProcessingStatus:
        token = token or CancellationToken.none()
        tracker = ProgressTracker(progress_sink, self._media_id)

        if not self._initialized:
            self._status = ProcessingStatus.FAILED
            self._error = self._error or "Pipeline was not initialized"
            tracker.finish("Failed", error=self._error)
            return self._status

        path = self._file_path
        try:
            tracker.report("Initialized", INIT_PERCENT)
            token.raise_if_cancelled()

            self._extract_thumbnail(path, token)
            tracker.report("Thumbnail", THUMBNAIL_PERCENT)
            token.raise_if_cancelled()

            result = self._transcribe(path, tracker, token)
            if not result.success:
                return self._fail(tracker, result.error or "Transcription failed")
            tracker.report("Transcribed", TRANSCRIBED_PERCENT)
            token.raise_if_cancelled()

            if not self._persist(result):
                return self._fail(tracker, "Failed to save transcript")

            self._index()
            tracker.report("Indexing", INDEXING_PERCENT)

            tracker.report("Finalizing", FINALIZING_PERCENT)
            self._status = ProcessingStatus.COMPLETED
            self._write_status(ProcessingStatus.COMPLETED)
            tracker.finish("Completed")
            self.logger.info(f"PIPELINE_END: {path.name} status=Completed")
            return self._status
        except OperationCancelled as e:
            self._status = ProcessingStatus.CANCELLED
            self._error = str(e)
            self.logger.info(f"PIPELINE_CANCELLED: {path.name}")
            self._write_status(ProcessingStatus.CANCELLED)
            tracker.finish("Cancelled", error=self._error)
            raise
        except Exception as e:
            self.logger.exception(f"PIPELINE_ERROR: {path.name}: {e}")
            return self._fail(tracker, str(e))

    def _fail(self, tracker: ProgressTracker, error: str) -> ProcessingStatus:
        self._status = ProcessingStatus.FAILED
        self._error = error
        self.logger.error(f"PIPELINE_END: {self._file_path.name} status=Failed error={error}")
        self._write_status(ProcessingStatus.FAILED)
        tracker.finish("Failed", error=error)
        return self._status

    def _extract_thumbnail(self, path: Path, token: CancellationToken) -> None:
        if self.thumbnails is None:
            return
        output = path.parent / self.thumbnail_dir_name / f"{path.stem}_thumb.jpg"
        try:
            result = self.thumbnails.extract(path, output, token)
            if not result.success:
                self.logger.warning(f"Thumbnail extraction failed for {path.name}: {result.error}")
        except OperationCancelled:
            raise
        except Exception as e:
            self.logger.warning(f"Thumbnail extraction error for {path.name}: {e}")

    def _transcribe(self, path: Path, tracker: ProgressTracker, token: CancellationToken) -> TranscriptionResult:
        content_hash = None
        try:
            content_hash = self.verification.compute_hash(path)
        except OSError as e:
            self.logger.warning(f"Could not hash {path.name}, verification skipped: {e}")

        if content_hash:
            cached = self._load_verified(path, content_hash)
            if cached is not None:
                self.logger.info(f"TRANSCRIBE_SKIP: {path.name} already verified ({content_hash[:12]})")
                tracker.report("Transcription skipped", TRANSCRIBED_PERCENT)
                return cached

        output_path = self.verification.expected_output_path(path, content_hash)
        if content_hash:
            self.verification.register(path, content_hash, "", output_path, ProcessingStatus.PROCESSING.value)

        scaled = tracker.scaled("Transcribing", THUMBNAIL_PERCENT, TRANSCRIBED_PERCENT)

        def on_progress(progress: TranscriptionProgress) -> None:
            scaled(progress.fraction)
            if self._media_id:
                try:
                    self.catalog.update_phase(self._media_id, progress.phase)
                except Exception as e:
                    self.logger.debug(f"Phase update failed for {self._media_id}: {e}")

        self.logger.info(f"TRANSCRIBE_START: {path.name}")
        try:
            result = self.transcriber.transcribe(path, output_path, on_progress, token)
        except TranscriptionError as e:
            result = TranscriptionResult(success=False, error=str(e))

        if content_hash:
            if result.success:
                self.verification.update_status(
                    content_hash, result.transcript_id, ProcessingStatus.COMPLETED.value, True
                )
            else:
                self.verification.update_status(
                    content_hash, result.transcript_id, ProcessingStatus.FAILED.value, False
                )
        return result

    def _load_verified(self, path: Path, content_hash: str) -> Optional[TranscriptionResult]:
        if not self.verification.is_already_processed(path, content_hash):
            return None
        cached_path = self.verification.cached_output(path, content_hash)
        if cached_path is None:
            return None
        try:
            with open(cached_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Cached transcript unreadable ({cached_path}), transcribing again: {e}")
            return None
        record = self.verification.load(content_hash)
        result = parse_transcript_document(data, record.transcription_id if record else None)
        if not result.success:
            return None
        result.output_path = cached_path
        return result

    def _persist(self, result: TranscriptionResult) -> bool:
        if not self._media_id:
            self.logger.warning(f"No media item for {self._file_path.name}, transcript not saved")
            return True
        transcript = MediaTranscript(
            media_id=self._media_id,
            transcript_id=result.transcript_id,
            text=result.text,
            language=result.language,
            segments=result.segments,
        )
        return self.catalog.save_transcript(self._media_id, transcript)

    def _index(self) -> None:
        if self.indexer is None:
            return
        if not self._media_id:
            self.logger.warning(f"No media item for {self._file_path.name}, indexing skipped")
            return
        try:
            result = self.indexer.index_media(self._media_id)
            if not result.success:
                self.logger.warning(f"Indexing failed for {self._media_id}: {result.error}")
        except Exception as e:
            self.logger.warning(f"Indexing error for {self._media_id}: {e}")

    def _write_status(self, status: ProcessingStatus) -> None:
        # Runs without the caller's token: terminal writes must not be cancelled
        if not self._media_id:
            return
        try:
            self.catalog.mark_status(self._media_id, status)
        except Exception as e:
            self.logger.error(f"Failed to record {status.value} for {self._media_id}: {e}")
