from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    # Transcription sub-phases (item is still owned by the claiming worker)
    EXTRACTING = "Extracting"
    UPLOADING_AUDIO = "UploadingAudio"
    WAITING_FOR_TRANSCRIPTION = "WaitingForTranscription"
    TRANSCRIBING = "Transcribing"
    DOWNLOADING_RESULTS = "DownloadingResults"
    PREPROCESSING = "Preprocessing"
    POSTPROCESSING = "Postprocessing"
    REMOVING_SILENCE = "RemovingSilence"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """True for Processing and every transcription sub-phase."""
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({
    ProcessingStatus.COMPLETED,
    ProcessingStatus.FAILED,
    ProcessingStatus.CANCELLED,
})

TRANSCRIPTION_PHASES = frozenset({
    ProcessingStatus.EXTRACTING,
    ProcessingStatus.UPLOADING_AUDIO,
    ProcessingStatus.WAITING_FOR_TRANSCRIPTION,
    ProcessingStatus.TRANSCRIBING,
    ProcessingStatus.DOWNLOADING_RESULTS,
    ProcessingStatus.PREPROCESSING,
    ProcessingStatus.POSTPROCESSING,
    ProcessingStatus.REMOVING_SILENCE,
})

ACTIVE_STATUSES = frozenset({ProcessingStatus.PROCESSING}) | TRANSCRIPTION_PHASES


class MediaItem(BaseModel):
    id: str
    file_path: Path
    title: str = ""
    status: ProcessingStatus = ProcessingStatus.NOT_STARTED
    is_transcribed: bool = False
    transcript_path: Optional[Path] = None
    created_at: datetime = Field(default_factory=datetime.now)
    modified_at: datetime = Field(default_factory=datetime.now)


class VerificationRecord(BaseModel):
    """One content-hash record; serialized with the PascalCase field names on disk."""

    model_config = ConfigDict(populate_by_name=True)

    file_hash: str = Field(alias="FileHash")
    file_name: str = Field(default="unknown", alias="FileName")
    file_path: str = Field(default="", alias="FilePath")
    transcription_id: str = Field(default="", alias="TranscriptionId")
    output_path: str = Field(default="", alias="OutputPath")
    last_attempt: datetime = Field(default_factory=datetime.now, alias="LastAttempt")
    attempt_count: int = Field(default=1, ge=0, alias="AttemptCount")
    status: str = Field(default=ProcessingStatus.PROCESSING.value, alias="Status")
    is_verified: bool = Field(default=False, alias="IsVerified")

    @property
    def trusted(self) -> bool:
        return self.status == ProcessingStatus.COMPLETED.value and self.is_verified


class TranscriptSegment(BaseModel):
    text: str
    start: float = 0.0
    end: float = 0.0
    confidence: Optional[float] = None
    speaker: Optional[str] = None


class MediaTranscript(BaseModel):
    media_id: str
    transcript_id: str = ""
    text: str = ""
    language: Optional[str] = None
    segments: List[TranscriptSegment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)


class TranscriptionResult(BaseModel):
    success: bool
    transcript_id: str = ""
    text: str = ""
    language: Optional[str] = None
    segments: List[TranscriptSegment] = Field(default_factory=list)
    output_path: Optional[Path] = None
    error: Optional[str] = None


class OperationResult(BaseModel):
    """Success/failure outcome returned by best-effort collaborators."""

    success: bool
    error: Optional[str] = None
    output_path: Optional[Path] = None
