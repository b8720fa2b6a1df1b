import os
import time
import pytest
from pathlib import Path
from unittest.mock import patch
from mip.domain.models import ProcessingStatus
from mip.infrastructure.housekeeping import HousekeepingService

def test_housekeeping_cleanup_tmp(tmp_path):
    (tmp_path / "file1.json.tmp").write_text("data")
    (tmp_path / "file2.json").write_text("data")
    (tmp_path / "subdir").mkdir()
    (tmp_path / "subdir" / "file3.tmp").write_text("data")

    service = HousekeepingService()
    removed = service.cleanup_temp_files(tmp_path)

    assert removed == 2
    assert not (tmp_path / "file1.json.tmp").exists()
    assert (tmp_path / "file2.json").exists()
    assert not (tmp_path / "subdir" / "file3.tmp").exists()

def test_housekeeping_missing_directory(tmp_path):
    assert HousekeepingService().cleanup_temp_files(tmp_path / "absent") == 0

def test_housekeeping_handles_oserror(tmp_path):
    f = tmp_path / "protected.tmp"
    f.write_text("data")

    service = HousekeepingService()
    with patch.object(Path, 'unlink', side_effect=OSError("Permission denied")):
        # Should not raise exception
        assert service.cleanup_temp_files(tmp_path) == 0
        assert f.exists()

def test_requeue_interrupted(item_store, make_media):
    stuck = item_store.add(make_media("stuck.mp4"), status=ProcessingStatus.TRANSCRIBING)
    processing = item_store.add(make_media("processing.mp4"), status=ProcessingStatus.PROCESSING)
    done = item_store.add(make_media("done.mp4"), status=ProcessingStatus.COMPLETED)

    requeued = HousekeepingService().requeue_interrupted(item_store)

    assert requeued == 2
    assert item_store.get(stuck.id).status == ProcessingStatus.QUEUED
    assert item_store.get(processing.id).status == ProcessingStatus.QUEUED
    assert item_store.get(done.id).status == ProcessingStatus.COMPLETED

def test_housekeeping_keeps_recent_tmp_files(tmp_path):
    fresh = tmp_path / "in-flight.json.tmp"
    fresh.write_text("data")
    stale = tmp_path / "abandoned.json.tmp"
    stale.write_text("data")
    two_hours_ago = time.time() - 7200
    os.utime(stale, (two_hours_ago, two_hours_ago))

    removed = HousekeepingService().cleanup_temp_files(tmp_path, min_age_s=3600)

    assert removed == 1
    assert fresh.exists()
    assert not stale.exists()
