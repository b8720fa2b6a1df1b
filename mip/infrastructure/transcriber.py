"""
AssemblyAI speech-to-text integration.

Upload the media file, submit a transcription job, poll until it finishes,
then store the completed transcript document at the requested output path.
Transient HTTP failures (connection errors, 429, 5xx) are retried.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import requests

from mip.config.models import TranscriptionConfig
from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled, TranscriptionError
from mip.domain.events import TranscriptionProgress, TranscriptionProgressSink
from mip.domain.models import ProcessingStatus, TranscriptionResult
from mip.domain.transcripts import parse_transcript_document
from mip.pipeline.resources import KeyedResourceCache
from mip.pipeline.retry import RetryPolicy

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 5 * 1024 * 1024

# Provider status -> percent, used when the provider reports no percentage
STATUS_PERCENT = {
    "queued": 0,
    "processing": 10,
    "transcribing": 50,
    "completed": 100,
}

# Fractions of the whole transcription stage
UPLOAD_START = 0.0
UPLOAD_DONE = 0.2
POLL_START = 0.25
POLL_END = 0.85
DOWNLOAD_START = 0.9


def status_percent(status: Optional[str]) -> int:
    return STATUS_PERCENT.get((status or "").lower(), 0)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TranscriptionError) and exc.retryable


def _read_chunks(path: Path, token: CancellationToken) -> Iterator[bytes]:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(UPLOAD_CHUNK_SIZE), b""):
            token.raise_if_cancelled()
            yield chunk


class AssemblyAITranscriber:
    """Transcription engine backed by the AssemblyAI REST API.

    HTTP sessions are shared per API key through a KeyedResourceCache.
    """

    def __init__(
        self,
        config: TranscriptionConfig,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sessions: Optional[KeyedResourceCache] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.sessions = sessions or KeyedResourceCache()
        self.retry = RetryPolicy(
            max_attempts=config.max_retries + 1,
            delay_s=2.0,
            backoff=2.0,
            max_delay_s=30.0,
            retry_on=(TranscriptionError,),
            should_retry=_is_retryable,
        )

    def close(self) -> None:
        self.sessions.close()

    def _session(self, api_key: str) -> requests.Session:
        def build() -> requests.Session:
            session = self.session_factory()
            session.headers.update({"authorization": api_key})
            return session
        return self.sessions.use(api_key, build)

    def _send(self, session: requests.Session, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        try:
            resp = session.request(method, url, timeout=self.config.request_timeout_s, **kwargs)
        except requests.exceptions.Timeout:
            raise TranscriptionError(f"AssemblyAI request timed out: {method} {path}", retryable=True)
        except requests.exceptions.ConnectionError:
            raise TranscriptionError("Network error connecting to AssemblyAI", retryable=True)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TranscriptionError(f"AssemblyAI returned {resp.status_code}", retryable=True)
        if resp.status_code >= 400:
            # Never include request headers here: they carry the API key
            body = resp.text[:300] if resp.text else "No response body"
            raise TranscriptionError(f"AssemblyAI returned {resp.status_code}: {body}")
        try:
            return resp.json()
        except ValueError:
            raise TranscriptionError("Failed to parse AssemblyAI response JSON")

    def _request(
        self,
        session,
        method: str,
        path: str,
        token: CancellationToken,
        body_factory: Optional[Callable[[], Any]] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        def attempt() -> Dict[str, Any]:
            # Streamed bodies are single-use, so every attempt gets a fresh one
            if body_factory is not None:
                kwargs["data"] = body_factory()
            return self._send(session, method, path, **kwargs)

        def on_retry(exc: BaseException, attempt_no: int, delay: float) -> None:
            logger.warning(f"AssemblyAI {method} {path} failed ({exc}), retry {attempt_no} in {delay:.1f}s")

        return self.retry.call(attempt, token, on_retry)

    def transcribe(
        self,
        file_path: Path,
        output_path: Path,
        on_progress: Optional[TranscriptionProgressSink],
        token: CancellationToken,
    ) -> TranscriptionResult:
        def report(phase: ProcessingStatus, fraction: float, message: Optional[str] = None) -> None:
            if on_progress is not None:
                on_progress(TranscriptionProgress(phase=phase, fraction=fraction, message=message))

        api_key = self.config.resolve_api_key()
        if not api_key:
            return TranscriptionResult(
                success=False,
                error=f"AssemblyAI API key not configured (set {self.config.api_key_env})",
            )

        file_path = Path(file_path)
        output_path = Path(output_path)
        session = self._session(api_key)
        try:
            report(ProcessingStatus.UPLOADING_AUDIO, UPLOAD_START, "Uploading")
            upload_url = self._upload(session, file_path, token)
            report(ProcessingStatus.UPLOADING_AUDIO, UPLOAD_DONE, "Uploaded")

            transcript_id = self._submit(session, upload_url, token)
            logger.info(f"TRANSCRIPTION_SUBMITTED: {file_path.name} id={transcript_id}")
            report(ProcessingStatus.WAITING_FOR_TRANSCRIPTION, POLL_START, "Queued")

            data = self._poll(session, transcript_id, report, token)

            report(ProcessingStatus.DOWNLOADING_RESULTS, DOWNLOAD_START, "Saving transcript")
            self._save(data, output_path)
            report(ProcessingStatus.DOWNLOADING_RESULTS, 1.0, "Done")
        except TranscriptionError as e:
            logger.error(f"TRANSCRIPTION_FAILED: {file_path.name}: {e.message}")
            return TranscriptionResult(success=False, error=e.message)
        except OSError as e:
            logger.error(f"TRANSCRIPTION_FAILED: {file_path.name}: {e}")
            return TranscriptionResult(success=False, error=str(e))

        result = parse_transcript_document(data, transcript_id)
        if not result.success:
            return TranscriptionResult(
                success=False, transcript_id=transcript_id, error="AssemblyAI returned an empty transcript"
            )
        result.output_path = output_path
        logger.info(f"TRANSCRIPTION_DONE: {file_path.name} id={transcript_id} segments={len(result.segments)}")
        return result

    def _upload(self, session, file_path: Path, token: CancellationToken) -> str:
        data = self._request(
            session, "POST", "/upload", token, body_factory=lambda: _read_chunks(file_path, token)
        )
        upload_url = data.get("upload_url")
        if not upload_url:
            raise TranscriptionError("AssemblyAI upload returned no upload_url")
        return upload_url

    def _submit(self, session, upload_url: str, token: CancellationToken) -> str:
        payload: Dict[str, Any] = {
            "audio_url": upload_url,
            "speaker_labels": self.config.speaker_labels,
        }
        if self.config.language_code:
            payload["language_code"] = self.config.language_code
        else:
            payload["language_detection"] = True
        data = self._request(session, "POST", "/transcript", token, json=payload)
        transcript_id = data.get("id")
        if not transcript_id:
            raise TranscriptionError("AssemblyAI did not return a transcript id")
        return transcript_id

    def _poll(self, session, transcript_id: str, report, token: CancellationToken) -> Dict[str, Any]:
        deadline = time.monotonic() + self.config.timeout_s
        while True:
            token.raise_if_cancelled()
            data = self._request(session, "GET", f"/transcript/{transcript_id}", token)
            status = (data.get("status") or "").lower()
            if status == "completed":
                return data
            if status == "error":
                raise TranscriptionError(f"AssemblyAI transcription failed: {data.get('error', 'unknown error')}")

            percent = status_percent(status)
            phase = (
                ProcessingStatus.WAITING_FOR_TRANSCRIPTION if status == "queued"
                else ProcessingStatus.TRANSCRIBING
            )
            report(phase, POLL_START + (POLL_END - POLL_START) * percent / 100.0, status)

            if time.monotonic() >= deadline:
                raise TranscriptionError(f"Transcription {transcript_id} timed out after {self.config.timeout_s:.0f}s")
            if token.wait(self.config.poll_interval_s):
                raise OperationCancelled(token.reason or "Transcription cancelled")

    def _save(self, data: Dict[str, Any], output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = output_path.with_name(output_path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, output_path)
