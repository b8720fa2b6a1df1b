import json
import threading
import pytest
import yaml
from pathlib import Path
from typing import List, Optional

from mip.config.models import AppConfig
from mip.domain.events import TranscriptionProgress
from mip.domain.models import ProcessingStatus, TranscriptionResult
from mip.domain.transcripts import parse_transcript_document
from mip.infrastructure.item_store import MediaItemStore
from mip.infrastructure.media_service import MediaService
from mip.infrastructure.verification_store import VerificationStore

# ============================================================================
# Transcript documents
# ============================================================================

def make_provider_document(transcript_id: str = "tr-1", text: str = "hello world from the test suite") -> dict:
    """Completed transcript in the provider's raw JSON shape (offsets in ms)."""
    words = [
        {"text": w, "start": i * 300, "end": i * 300 + 250, "confidence": 0.95, "speaker": "A"}
        for i, w in enumerate(text.split())
    ]
    return {
        "id": transcript_id,
        "status": "completed",
        "text": text,
        "language_code": "en",
        "utterances": [
            {
                "speaker": "A",
                "text": text,
                "start": 0,
                "end": words[-1]["end"],
                "confidence": 0.95,
                "words": words,
            }
        ],
        "words": words,
    }


class FakeTranscriber:
    """Transcriber double: reports phases and writes a provider document.

    ``wait_for_cancel`` makes it block on the token (up to ``block_s``) so tests
    can cancel mid-transcription.
    """

    def __init__(self, text: str = "hello world from the test suite", error: Optional[str] = None,
                 wait_for_cancel: bool = False, block_s: float = 10.0):
        self.text = text
        self.error = error
        self.wait_for_cancel = wait_for_cancel
        self.block_s = block_s
        self.calls: List[Path] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def transcribe(self, file_path, output_path, on_progress, token):
        with self._lock:
            self.calls.append(Path(file_path))
        self.started.set()
        if on_progress:
            on_progress(TranscriptionProgress(phase=ProcessingStatus.UPLOADING_AUDIO, fraction=0.2))
            on_progress(TranscriptionProgress(phase=ProcessingStatus.TRANSCRIBING, fraction=0.6))
        if self.wait_for_cancel:
            token.wait(self.block_s)
        token.raise_if_cancelled()
        if self.error:
            return TranscriptionResult(success=False, error=self.error)

        document = make_provider_document(f"tr-{Path(file_path).stem}", self.text)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        if on_progress:
            on_progress(TranscriptionProgress(phase=ProcessingStatus.DOWNLOADING_RESULTS, fraction=1.0))
        result = parse_transcript_document(document)
        result.output_path = output_path
        return result

@pytest.fixture
def provider_document():
    """Factory for completed provider transcript documents."""
    return make_provider_document


@pytest.fixture
def fake_transcriber():
    """Factory for FakeTranscriber instances."""
    return FakeTranscriber

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns a sample AppConfig rooted in tmp_path."""
    return AppConfig(
        general={"debug": False, "data_dir": str(tmp_path / "data")},
        watch={
            "folders": [str(tmp_path / "inbox")],
            "media_extensions": [".mp4", ".mov", ".mp3"],
            "ready_retries": 3,
            "ready_delay_s": 0.01,
            "event_workers": 2,
        },
        queue={"poll_interval_s": 0.05, "shutdown_timeout_s": 5},
        pipeline={"thumbnails": False},
        transcription={"api_key": "test-key", "poll_interval_s": 0.01},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "mip.yaml"

    content = {
        'general': {
            'debug': False,
            'data_dir': str(tmp_path / "data"),
        },
        'watch': {
            'folders': [str(tmp_path / "inbox")],
            'media_extensions': ['mp4', 'MOV'],
        },
        'queue': {
            'poll_interval_s': 2,
        },
        'pipeline': {
            'thumbnails': False,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def item_store(tmp_path):
    store = MediaItemStore(tmp_path / "data" / "mip.db")
    yield store
    store.close()


@pytest.fixture
def media_service(item_store, tmp_path):
    return MediaService(item_store, tmp_path / "data" / "transcripts")


@pytest.fixture
def verification_store(tmp_path):
    return VerificationStore(tmp_path / "data" / "verification", tmp_path / "data" / "raw")

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def inbox(tmp_path):
    inbox_dir = tmp_path / "inbox"
    inbox_dir.mkdir()
    return inbox_dir


@pytest.fixture
def make_media(inbox):
    """Factory writing a dummy media file into the inbox."""
    def _make(name: str = "clip.mp4", content: bytes = b"dummy video content " * 100) -> Path:
        path = inbox / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path
    return _make

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
