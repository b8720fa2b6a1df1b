import subprocess
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock
from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled
from mip.infrastructure.ffmpeg import FFmpegThumbnailExtractor


def _process(returncode=0, stderr="", on_communicate=None):
    process = MagicMock()
    process.returncode = returncode

    def communicate(timeout=None):
        if on_communicate:
            on_communicate()
        return "", stderr

    process.communicate.side_effect = communicate
    return process


def test_ffmpeg_thumbnail_command():
    extractor = FFmpegThumbnailExtractor(offset_s=5)
    cmd = extractor._build_command(Path("in.mp4"), Path("out.jpg"), 5)

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-ss") + 1] == "5.000"
    assert cmd[cmd.index("-i") + 1] == "in.mp4"
    assert cmd[cmd.index("-frames:v") + 1] == "1"
    assert cmd[-1] == "out.jpg"

def test_audio_only_is_skipped(tmp_path):
    with patch("subprocess.Popen") as mock_popen:
        result = FFmpegThumbnailExtractor().extract(tmp_path / "talk.mp3", tmp_path / "t.jpg", CancellationToken())
    assert not result.success
    mock_popen.assert_not_called()

def test_extract_success(tmp_path):
    output = tmp_path / "thumbnails" / "clip_thumb.jpg"
    with patch("subprocess.Popen") as mock_popen:
        mock_popen.return_value = _process(on_communicate=lambda: output.write_bytes(b"jpg"))
        result = FFmpegThumbnailExtractor().extract(tmp_path / "clip.mp4", output, CancellationToken())

    assert result.success
    assert result.output_path == output
    assert output.parent.is_dir()

def test_short_clip_falls_back_to_first_frame(tmp_path):
    output = tmp_path / "clip_thumb.jpg"
    first = _process()
    second = _process(on_communicate=lambda: output.write_bytes(b"jpg"))
    with patch("subprocess.Popen", side_effect=[first, second]) as mock_popen:
        result = FFmpegThumbnailExtractor(offset_s=5).extract(tmp_path / "clip.mp4", output, CancellationToken())

    assert result.success
    second_cmd = mock_popen.call_args_list[1].args[0]
    assert second_cmd[second_cmd.index("-ss") + 1] == "0.000"

def test_extract_failure_reports_stderr(tmp_path):
    with patch("subprocess.Popen") as mock_popen:
        mock_popen.return_value = _process(returncode=1, stderr="line1\nInvalid data found\n")
        result = FFmpegThumbnailExtractor().extract(tmp_path / "clip.mp4", tmp_path / "t.jpg", CancellationToken())

    assert not result.success
    assert "Invalid data found" in result.error

def test_missing_ffmpeg_binary(tmp_path):
    with patch("subprocess.Popen", side_effect=FileNotFoundError("ffmpeg")):
        result = FFmpegThumbnailExtractor().extract(tmp_path / "clip.mp4", tmp_path / "t.jpg", CancellationToken())
    assert not result.success
    assert "Cannot start ffmpeg" in result.error

def test_cancellation_terminates_process(tmp_path):
    token = CancellationToken()
    process = MagicMock()

    def communicate(timeout=None):
        token.cancel("shutdown")
        raise subprocess.TimeoutExpired("ffmpeg", timeout)

    process.communicate.side_effect = communicate
    with patch("subprocess.Popen", return_value=process):
        with pytest.raises(OperationCancelled):
            FFmpegThumbnailExtractor().extract(tmp_path / "clip.mp4", tmp_path / "t.jpg", token)
    process.terminate.assert_called_once()

def test_timeout_kills_stuck_process(tmp_path):
    process = MagicMock()
    process.communicate.side_effect = subprocess.TimeoutExpired("ffmpeg", 0.2)
    process.wait.side_effect = [subprocess.TimeoutExpired("ffmpeg", 3), 0]
    with patch("subprocess.Popen", return_value=process):
        result = FFmpegThumbnailExtractor(timeout_s=0).extract(
            tmp_path / "clip.mp4", tmp_path / "t.jpg", CancellationToken()
        )
    assert not result.success
    assert "timed out" in result.error
    process.kill.assert_called_once()
