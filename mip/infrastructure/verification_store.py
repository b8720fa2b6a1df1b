"""Content-hash verification records.

One JSON file per SHA-256 content hash lives in the verification directory.
A record with Status == Completed and IsVerified == true means the output
artifact for that content is trustworthy and the file need not be transcribed
again, whatever its current name or location.
"""

import hashlib
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from mip.domain.models import VerificationRecord
from mip.domain.transcripts import MIN_TRANSCRIPT_BYTES, validate_transcript_document

HASH_CHUNK_SIZE = 8 * 1024 * 1024


class VerificationStore:
    """Per-content-hash processing records stored as JSON files.

    Args:
        verification_dir: Directory holding ``{hash}.json`` records.
        output_dir: Directory where transcription output documents are
            expected (``{stem}.json``).
    """

    def __init__(self, verification_dir: Path, output_dir: Path):
        self.verification_dir = Path(verification_dir)
        self.output_dir = Path(output_dir)
        self.verification_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)

    def record_path(self, content_hash: str) -> Path:
        return self.verification_dir / f"{content_hash}.json"

    def expected_output_path(self, file_path: Path, content_hash: Optional[str] = None) -> Path:
        """Output document for this content: ``{hash}.json``, or ``{stem}.json`` when unhashed.

        Keyed by content so that same-named files from different folders never
        share an artifact.
        """
        if content_hash:
            return self.output_dir / f"{content_hash}.json"
        return self.output_dir / f"{Path(file_path).stem}.json"

    def compute_hash(self, file_path: Path) -> str:
        """SHA-256 of the file bytes (name and timestamps play no part)."""
        hasher = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def load(self, content_hash: str) -> Optional[VerificationRecord]:
        path = self.record_path(content_hash)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return VerificationRecord.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            self.logger.warning(f"Unreadable verification record {path.name}: {e}")
            return None

    def verify_output_file(self, output_path: Path) -> bool:
        """Size, parse and content check of a transcription output document."""
        try:
            path = Path(output_path)
            if not path.is_file():
                return False
            if path.stat().st_size < MIN_TRANSCRIPT_BYTES:
                self.logger.debug(f"Output too small to be valid: {path}")
                return False
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return validate_transcript_document(data)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Output verification failed for {output_path}: {e}")
            return False

    def is_already_processed(self, file_path: Path, content_hash: str) -> bool:
        try:
            record = self.load(content_hash)
            if record is not None and record.trusted:
                self.logger.info(f"VERIFIED: {Path(file_path).name} matches record {content_hash[:12]}")
                return True
            expected = self.expected_output_path(file_path, content_hash)
            if self.verify_output_file(expected):
                self.logger.info(f"VERIFIED: {Path(file_path).name} has valid output {expected.name}")
                return True
            return False
        except Exception as e:
            self.logger.warning(f"Verification check failed for {file_path}, will reprocess: {e}")
            return False

    def cached_output(self, file_path: Path, content_hash: str) -> Optional[Path]:
        """Best existing output for this content: the record's, else the expected path."""
        record = self.load(content_hash)
        if record is not None and record.output_path:
            candidate = Path(record.output_path)
            if self.verify_output_file(candidate):
                return candidate
        expected = self.expected_output_path(file_path, content_hash)
        if self.verify_output_file(expected):
            return expected
        return None

    def register(
        self,
        file_path: Path,
        content_hash: str,
        external_job_id: str,
        output_path: Path,
        status: str,
        attempt_count: Optional[int] = None,
    ) -> None:
        existing = self.load(content_hash)
        if attempt_count is None:
            attempt_count = existing.attempt_count + 1 if existing is not None else 1
        record = VerificationRecord(
            file_hash=content_hash,
            file_name=Path(file_path).name,
            file_path=str(file_path),
            transcription_id=external_job_id or (existing.transcription_id if existing else ""),
            output_path=str(output_path),
            last_attempt=datetime.now(),
            attempt_count=attempt_count,
            status=status,
            is_verified=False,
        )
        self._write(record)

    def update_status(self, content_hash: str, external_job_id: str, status: str, is_verified: bool) -> None:
        record = self.load(content_hash) or VerificationRecord(file_hash=content_hash)
        updates = {"status": status, "is_verified": is_verified, "last_attempt": datetime.now()}
        if external_job_id:
            updates["transcription_id"] = external_job_id
        self._write(record.model_copy(update=updates))

    def _write(self, record: VerificationRecord) -> None:
        # Write failures are logged, never raised
        target = self.record_path(record.file_hash)
        tmp = target.with_name(target.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(by_alias=True, indent=2))
            os.replace(tmp, target)
        except OSError as e:
            self.logger.warning(f"Failed to write verification record {target.name}: {e}")
