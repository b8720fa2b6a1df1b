import logging
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled
from mip.domain.models import OperationResult

AUDIO_ONLY_EXTENSIONS = {".mp3", ".wav", ".m4a", ".flac", ".aac", ".ogg"}


class FFmpegThumbnailExtractor:
    """Grabs a single JPEG frame from a video with ffmpeg."""

    def __init__(self, offset_s: float = 5.0, ffmpeg_path: str = "ffmpeg", timeout_s: float = 60.0):
        self.offset_s = offset_s
        self.ffmpeg_path = ffmpeg_path
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(__name__)

    def _build_command(self, file_path: Path, output_path: Path, offset_s: float) -> List[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-ss", f"{offset_s:.3f}",
            "-i", str(file_path),
            "-frames:v", "1",
            "-q:v", "2",
            str(output_path),
        ]

    def extract(self, file_path: Path, output_path: Path, token: CancellationToken) -> OperationResult:
        file_path = Path(file_path)
        output_path = Path(output_path)
        if file_path.suffix.lower() in AUDIO_ONLY_EXTENSIONS:
            return OperationResult(success=False, error="Audio-only file, no frame to extract")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        error = self._run(self._build_command(file_path, output_path, self.offset_s), file_path.name, token)
        if error is None and not output_path.exists() and self.offset_s > 0:
            # Clip shorter than the offset: take the first frame instead
            error = self._run(self._build_command(file_path, output_path, 0.0), file_path.name, token)

        if error is not None:
            return OperationResult(success=False, error=error)
        if not output_path.exists():
            return OperationResult(success=False, error="ffmpeg produced no thumbnail")
        self.logger.info(f"THUMBNAIL: {file_path.name} -> {output_path}")
        return OperationResult(success=True, output_path=output_path)

    def _run(self, cmd: List[str], filename: str, token: CancellationToken) -> Optional[str]:
        """Runs ffmpeg; returns an error string, or None on exit code 0."""
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                universal_newlines=True,
            )
        except OSError as e:
            return f"Cannot start ffmpeg: {e}"

        started = time.monotonic()
        stderr = ""
        while True:
            try:
                _, stderr = process.communicate(timeout=0.2)
                break
            except subprocess.TimeoutExpired:
                pass
            if token.is_cancelled:
                self.logger.info(f"FFMPEG_INTERRUPTED: {filename} (cancelled)")
                self._stop(process)
                raise OperationCancelled(token.reason or "Thumbnail extraction cancelled")
            if time.monotonic() - started > self.timeout_s:
                self._stop(process)
                return f"ffmpeg timed out after {self.timeout_s:.0f}s"

        if process.returncode != 0:
            detail = (stderr or "").strip().splitlines()
            return f"ffmpeg exited with {process.returncode}: {detail[-1] if detail else 'no output'}"
        return None

    @staticmethod
    def _stop(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
