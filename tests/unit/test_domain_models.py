import json
import pytest
from pathlib import Path
from pydantic import ValidationError
from mip.domain.models import (
    MediaItem,
    ProcessingStatus,
    TERMINAL_STATUSES,
    TRANSCRIPTION_PHASES,
    VerificationRecord,
)
from mip.domain.events import ProcessingProgress, TranscriptionProgress
from mip.domain.transcripts import parse_transcript_document, validate_transcript_document

def test_terminal_statuses():
    assert TERMINAL_STATUSES == {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, ProcessingStatus.CANCELLED}
    for status in TERMINAL_STATUSES:
        assert status.is_terminal
        assert not status.is_active
    assert not ProcessingStatus.QUEUED.is_terminal

def test_processing_and_phases_are_active():
    assert ProcessingStatus.PROCESSING.is_active
    for phase in TRANSCRIPTION_PHASES:
        assert phase.is_active
    assert not ProcessingStatus.QUEUED.is_active
    assert not ProcessingStatus.NOT_STARTED.is_active

def test_status_values_match_stored_names():
    assert ProcessingStatus("WaitingForTranscription") is ProcessingStatus.WAITING_FOR_TRANSCRIPTION
    assert ProcessingStatus.NOT_STARTED.value == "NotStarted"

def test_media_item_defaults():
    item = MediaItem(id="abc", file_path=Path("clip.mp4"))
    assert item.status == ProcessingStatus.NOT_STARTED
    assert item.is_transcribed is False
    assert item.transcript_path is None

def test_media_item_invalid_status():
    with pytest.raises(ValidationError):
        MediaItem(id="abc", file_path=Path("clip.mp4"), status="Sleeping")

def test_verification_record_serializes_with_pascal_case():
    record = VerificationRecord(file_hash="ab" * 32, file_name="clip.mp4", status="Completed", is_verified=True)
    data = json.loads(record.model_dump_json(by_alias=True))
    assert set(data) == {
        "FileHash", "FileName", "FilePath", "TranscriptionId", "OutputPath",
        "LastAttempt", "AttemptCount", "Status", "IsVerified",
    }
    assert data["IsVerified"] is True
    restored = VerificationRecord.model_validate(data)
    assert restored.file_name == "clip.mp4"
    assert restored.trusted

def test_verification_record_trust_requires_both_flags():
    assert not VerificationRecord(file_hash="x", status="Completed", is_verified=False).trusted
    assert not VerificationRecord(file_hash="x", status="Processing", is_verified=True).trusted

def test_progress_percent_bounds():
    ProcessingProgress(stage="x", percent=100)
    with pytest.raises(ValidationError):
        ProcessingProgress(stage="x", percent=101)
    with pytest.raises(ValidationError):
        TranscriptionProgress(phase=ProcessingStatus.TRANSCRIBING, fraction=1.5)

def test_validate_provider_document(provider_document):
    doc = provider_document()
    assert validate_transcript_document(doc)

    assert not validate_transcript_document({**doc, "status": "processing"})
    assert not validate_transcript_document({**doc, "text": "   "})
    assert not validate_transcript_document({**doc, "words": []})
    no_utterances = dict(doc)
    del no_utterances["utterances"]
    assert not validate_transcript_document(no_utterances)

def test_validate_converted_document():
    assert validate_transcript_document({"segments": [{"text": "hi", "start": 0, "end": 1}]})
    assert not validate_transcript_document({"segments": []})
    assert not validate_transcript_document(["not", "a", "dict"])

def test_parse_provider_document_converts_ms(provider_document):
    result = parse_transcript_document(provider_document("tr-9", "one two three"))
    assert result.success
    assert result.transcript_id == "tr-9"
    assert result.language == "en"
    assert len(result.segments) == 1
    assert result.segments[0].speaker == "A"
    assert result.segments[0].end == pytest.approx(0.85)

def test_parse_provider_document_without_utterances_uses_words(provider_document):
    doc = provider_document(text="alpha beta")
    doc["utterances"] = []
    result = parse_transcript_document(doc)
    assert [s.text for s in result.segments] == ["alpha", "beta"]

def test_parse_invalid_document():
    result = parse_transcript_document({"status": "error", "text": ""})
    assert not result.success
    assert result.error
