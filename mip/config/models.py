import os
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_MEDIA_EXTENSIONS = [".mp4", ".mov", ".avi", ".mkv", ".mp3", ".wav", ".m4a"]


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None
    data_dir: str = Field(default="mip_data")


class WatchConfig(BaseModel):
    folders: List[str] = Field(default_factory=list)
    include_subfolders: bool = True
    process_existing_files: bool = True
    media_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_MEDIA_EXTENSIONS))
    transcript_dir_name: str = Field(default="transcripts", min_length=1)
    ready_retries: int = Field(default=10, ge=1)
    ready_delay_s: float = Field(default=1.0, ge=0.0)
    event_workers: int = Field(default=4, ge=1, le=32)

    @field_validator("media_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        normalized = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        if not normalized:
            raise ValueError("media_extensions must contain at least one extension")
        return normalized


class QueueConfig(BaseModel):
    poll_interval_s: float = Field(default=10.0, gt=0.0)
    shutdown_timeout_s: float = Field(default=30.0, ge=0.0)
    requeue_interrupted: bool = False
    temp_file_min_age_s: float = Field(default=3600.0, ge=0.0)


class StorageConfig(BaseModel):
    database_path: str = "mip.db"
    verification_dir: str = "verification"
    transcripts_dir: str = "transcripts"
    raw_output_dir: str = "raw"


class PipelineConfig(BaseModel):
    thumbnails: bool = True
    thumbnail_offset_s: float = Field(default=5.0, ge=0.0)
    thumbnail_dir_name: str = "thumbnails"
    indexing: bool = True


class TranscriptionConfig(BaseModel):
    """AssemblyAI-compatible transcription endpoint."""
    base_url: str = "https://api.assemblyai.com/v2"
    api_key: Optional[str] = None
    api_key_env: str = "ASSEMBLYAI_API_KEY"
    poll_interval_s: float = Field(default=3.0, gt=0.0)
    timeout_s: float = Field(default=3600.0, gt=0.0)
    request_timeout_s: float = Field(default=60.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0)
    speaker_labels: bool = True
    language_code: Optional[str] = None

    def resolve_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get(self.api_key_env)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)

    @model_validator(mode="after")
    def validate_transcript_dir(self):
        if self.watch.transcript_dir_name == self.pipeline.thumbnail_dir_name:
            raise ValueError("transcript_dir_name and thumbnail_dir_name must differ")
        return self

    def resolve_path(self, value: str) -> Path:
        """Resolves a storage path relative to general.data_dir."""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return Path(self.general.data_dir).expanduser() / path

    @property
    def database_path(self) -> Path:
        return self.resolve_path(self.storage.database_path)

    @property
    def verification_dir(self) -> Path:
        return self.resolve_path(self.storage.verification_dir)

    @property
    def transcripts_dir(self) -> Path:
        return self.resolve_path(self.storage.transcripts_dir)

    @property
    def raw_output_dir(self) -> Path:
        return self.resolve_path(self.storage.raw_output_dir)
