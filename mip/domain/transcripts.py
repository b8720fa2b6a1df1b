"""Transcript document validation and parsing.

Two JSON shapes are accepted: the raw provider document (``status``, ``text``,
``utterances``, ``words`` with millisecond offsets) and the converted form
saved by the media service (``segments`` with second offsets).
"""

from typing import Any, Dict, List, Optional

from .models import TranscriptSegment, TranscriptionResult

MIN_TRANSCRIPT_BYTES = 100


def is_provider_document(data: Dict[str, Any]) -> bool:
    return "status" in data and "text" in data


def validate_transcript_document(data: Any) -> bool:
    """Structural check: non-empty primary text and at least one sub-segment."""
    if not isinstance(data, dict):
        return False
    if is_provider_document(data):
        if data.get("status") != "completed":
            return False
        if not (data.get("text") or "").strip():
            return False
        words = data.get("words")
        return "utterances" in data and isinstance(words, list) and len(words) > 0
    segments = data.get("segments")
    return isinstance(segments, list) and len(segments) > 0


def _ms(value: Any) -> float:
    return float(value or 0) / 1000.0


def _provider_segments(data: Dict[str, Any]) -> List[TranscriptSegment]:
    segments = []
    for utterance in data.get("utterances") or []:
        segments.append(TranscriptSegment(
            text=utterance.get("text", ""),
            start=_ms(utterance.get("start")),
            end=_ms(utterance.get("end")),
            confidence=utterance.get("confidence"),
            speaker=utterance.get("speaker"),
        ))
    if segments:
        return segments
    # No speaker labels: one segment per word
    for word in data.get("words") or []:
        segments.append(TranscriptSegment(
            text=word.get("text", ""),
            start=_ms(word.get("start")),
            end=_ms(word.get("end")),
            confidence=word.get("confidence"),
            speaker=word.get("speaker"),
        ))
    return segments


def parse_transcript_document(data: Dict[str, Any], transcript_id: Optional[str] = None) -> TranscriptionResult:
    if not validate_transcript_document(data):
        return TranscriptionResult(success=False, error="Transcript document is incomplete")
    if is_provider_document(data):
        return TranscriptionResult(
            success=True,
            transcript_id=transcript_id or str(data.get("id") or ""),
            text=data.get("text") or "",
            language=data.get("language_code"),
            segments=_provider_segments(data),
        )
    segments = [TranscriptSegment.model_validate(s) for s in data["segments"]]
    text = data.get("text") or " ".join(s.text for s in segments)
    return TranscriptionResult(
        success=True,
        transcript_id=transcript_id or str(data.get("transcript_id") or data.get("id") or ""),
        text=text,
        language=data.get("language"),
        segments=segments,
    )
