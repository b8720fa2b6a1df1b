import json
import pytest
from pathlib import Path
from unittest.mock import MagicMock, call
from mip.domain.cancellation import CancellationToken
from mip.domain.errors import OperationCancelled, TranscriptionError
from mip.domain.models import MediaItem, OperationResult, ProcessingStatus
from mip.pipeline.processing import ProcessingPipeline


@pytest.fixture
def catalog():
    catalog = MagicMock()
    catalog.find_by_filename.return_value = None
    catalog.import_media.side_effect = lambda path: MediaItem(id="m1", file_path=path)
    catalog.save_transcript.return_value = True
    catalog.update_phase.return_value = True
    catalog.mark_status.return_value = True
    return catalog


@pytest.fixture
def thumbnails():
    extractor = MagicMock()
    extractor.extract.return_value = OperationResult(success=True)
    return extractor


@pytest.fixture
def indexer():
    idx = MagicMock()
    idx.index_media.return_value = OperationResult(success=True)
    return idx


@pytest.fixture
def build(catalog, thumbnails, indexer, verification_store, fake_transcriber):
    def _build(transcriber=None):
        return ProcessingPipeline(
            catalog=catalog,
            transcriber=transcriber or fake_transcriber(),
            verification=verification_store,
            thumbnails=thumbnails,
            indexer=indexer,
        )
    return _build


def _run(pipeline, path, token=None, media_id=None):
    progress = []
    assert pipeline.initialize(path, media_id=media_id)
    status = pipeline.run(progress.append, token)
    return status, [p.percent for p in progress], progress


def test_success_path(build, catalog, thumbnails, indexer, verification_store, make_media):
    path = make_media()
    pipeline = build()

    status, percents, _ = _run(pipeline, path)

    assert status == ProcessingStatus.COMPLETED
    assert pipeline.status == ProcessingStatus.COMPLETED
    assert percents == sorted(percents)
    assert percents[-1] == 100
    for checkpoint in (10, 30, 80, 85, 95):
        assert checkpoint in percents
    assert any(30 < p < 80 for p in percents)

    thumbnails.extract.assert_called_once()
    assert thumbnails.extract.call_args.args[1] == path.parent / "thumbnails" / "clip_thumb.jpg"
    transcript = catalog.save_transcript.call_args.args[1]
    assert transcript.media_id == "m1"
    assert transcript.text
    indexer.index_media.assert_called_once_with("m1")
    catalog.mark_status.assert_called_once_with("m1", ProcessingStatus.COMPLETED)

    record = verification_store.load(verification_store.compute_hash(path))
    assert record.trusted
    assert record.transcription_id == "tr-clip"

def test_initialize_resolves_existing_item(build, catalog, make_media):
    path = make_media()
    catalog.find_by_filename.return_value = MediaItem(id="existing", file_path=path)
    pipeline = build()
    assert pipeline.initialize(path)
    assert pipeline.media_id == "existing"
    catalog.import_media.assert_not_called()

def test_initialize_with_known_media_id_skips_lookup(build, catalog, make_media):
    pipeline = build()
    assert pipeline.initialize(make_media(), media_id="given")
    assert pipeline.media_id == "given"
    catalog.find_by_filename.assert_not_called()

def test_initialize_lookup_failure_is_not_fatal(build, catalog, make_media):
    catalog.find_by_filename.side_effect = RuntimeError("store down")
    pipeline = build()
    assert pipeline.initialize(make_media())
    assert pipeline.media_id is None

    progress = []
    assert pipeline.run(progress.append) == ProcessingStatus.COMPLETED
    catalog.save_transcript.assert_not_called()
    catalog.mark_status.assert_not_called()

def test_missing_file_fails_initialization(build, catalog, tmp_path):
    pipeline = build()
    assert not pipeline.initialize(tmp_path / "gone.mp4", media_id="m9")
    assert pipeline.status == ProcessingStatus.FAILED
    catalog.mark_status.assert_called_once_with("m9", ProcessingStatus.FAILED)

    progress = []
    assert pipeline.run(progress.append) == ProcessingStatus.FAILED
    assert progress[-1].percent == 100
    assert "not found" in progress[-1].error

def test_thumbnail_failure_is_swallowed(build, thumbnails, make_media):
    thumbnails.extract.side_effect = RuntimeError("ffmpeg exploded")
    status, percents, _ = _run(build(), make_media())
    assert status == ProcessingStatus.COMPLETED
    assert 30 in percents

def test_thumbnail_unsuccessful_result_is_swallowed(build, thumbnails, make_media):
    thumbnails.extract.return_value = OperationResult(success=False, error="no video stream")
    status, _, _ = _run(build(), make_media())
    assert status == ProcessingStatus.COMPLETED

def test_index_failure_is_swallowed(build, indexer, make_media):
    indexer.index_media.side_effect = RuntimeError("index locked")
    status, percents, _ = _run(build(), make_media())
    assert status == ProcessingStatus.COMPLETED
    assert percents[-1] == 100

def test_transcription_failure_is_fatal(build, catalog, indexer, verification_store, fake_transcriber, make_media):
    path = make_media()
    status, percents, progress = _run(build(fake_transcriber(error="provider rejected file")), path)

    assert status == ProcessingStatus.FAILED
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert progress[-1].error == "provider rejected file"
    catalog.save_transcript.assert_not_called()
    indexer.index_media.assert_not_called()
    catalog.mark_status.assert_called_once_with("m1", ProcessingStatus.FAILED)
    record = verification_store.load(verification_store.compute_hash(path))
    assert record.status == "Failed"
    assert not record.trusted

def test_transcription_exception_is_fatal(build, catalog, make_media):
    transcriber = MagicMock()
    transcriber.transcribe.side_effect = TranscriptionError("quota exceeded")
    status, _, progress = _run(build(transcriber), make_media())
    assert status == ProcessingStatus.FAILED
    assert progress[-1].error == "quota exceeded"

def test_unexpected_exception_fails_with_full_progress(build, catalog, make_media):
    catalog.save_transcript.side_effect = RuntimeError("disk full")
    status, percents, _ = _run(build(), make_media())
    assert status == ProcessingStatus.FAILED
    assert percents[-1] == 100

def test_transcript_save_failure_fails_item(build, catalog, indexer, make_media):
    catalog.save_transcript.return_value = False
    status, _, _ = _run(build(), make_media())
    assert status == ProcessingStatus.FAILED
    indexer.index_media.assert_not_called()

def test_phases_forwarded_to_catalog(build, catalog, make_media):
    _run(build(), make_media())
    phases = [c.args[1] for c in catalog.update_phase.call_args_list]
    assert phases == [
        ProcessingStatus.UPLOADING_AUDIO,
        ProcessingStatus.TRANSCRIBING,
        ProcessingStatus.DOWNLOADING_RESULTS,
    ]

def test_verified_content_skips_transcription(build, catalog, fake_transcriber, make_media):
    first = fake_transcriber()
    _run(build(first), make_media("original.mp4", b"identical" * 100))

    second = fake_transcriber()
    catalog.save_transcript.reset_mock()
    status, percents, _ = _run(build(second), make_media("renamed.mp4", b"identical" * 100))

    assert status == ProcessingStatus.COMPLETED
    assert second.calls == []
    assert 80 in percents
    assert not any(30 < p < 80 for p in percents)
    transcript = catalog.save_transcript.call_args.args[1]
    assert transcript.transcript_id == "tr-original"
    assert transcript.segments

def test_verified_record_with_missing_output_transcribes_again(build, verification_store, fake_transcriber, make_media):
    path = make_media()
    _run(build(), path)
    verification_store.expected_output_path(path, verification_store.compute_hash(path)).unlink()

    again = fake_transcriber()
    status, _, _ = _run(build(again), path)

    assert status == ProcessingStatus.COMPLETED
    assert again.calls == [path]

def test_same_name_different_content_is_transcribed_separately(build, catalog, fake_transcriber, inbox):
    first = inbox / "court_a" / "hearing.mp4"
    second = inbox / "court_b" / "hearing.mp4"
    for path, content in ((first, b"court a audio " * 50), (second, b"court b audio " * 50)):
        path.parent.mkdir(parents=True)
        path.write_bytes(content)

    _run(build(fake_transcriber(text="testimony from court a only")), first, media_id="item-a")
    other = fake_transcriber(text="testimony from court b only")
    status, _, _ = _run(build(other), second, media_id="item-b")

    assert status == ProcessingStatus.COMPLETED
    assert other.calls == [second]
    saved = {c.args[0]: c.args[1].text for c in catalog.save_transcript.call_args_list}
    assert saved == {
        "item-a": "testimony from court a only",
        "item-b": "testimony from court b only",
    }

def test_cancelled_before_start_writes_cancelled(build, catalog, thumbnails, make_media):
    token = CancellationToken()
    token.cancel("shutdown")
    pipeline = build()
    pipeline.initialize(make_media())
    progress = []

    with pytest.raises(OperationCancelled):
        pipeline.run(progress.append, token)

    assert pipeline.status == ProcessingStatus.CANCELLED
    catalog.mark_status.assert_called_once_with("m1", ProcessingStatus.CANCELLED)
    thumbnails.extract.assert_not_called()
    assert progress[-1].percent == 100

def test_cancelled_mid_transcription(build, catalog, indexer, make_media):
    token = CancellationToken()
    transcriber = MagicMock()

    def transcribe(path, output, on_progress, tok):
        token.cancel("user")
        tok.raise_if_cancelled()

    transcriber.transcribe.side_effect = transcribe
    pipeline = build(transcriber)
    pipeline.initialize(make_media())

    with pytest.raises(OperationCancelled):
        pipeline.run(None, token)

    catalog.mark_status.assert_called_once_with("m1", ProcessingStatus.CANCELLED)
    indexer.index_media.assert_not_called()

def test_run_without_initialize_fails():
    pipeline = ProcessingPipeline(MagicMock(), MagicMock(), MagicMock())
    progress = []
    assert pipeline.run(progress.append) == ProcessingStatus.FAILED
    assert progress[-1].percent == 100

def test_optional_stages_disabled(catalog, verification_store, fake_transcriber, make_media):
    pipeline = ProcessingPipeline(catalog, fake_transcriber(), verification_store)
    status, percents, _ = _run(pipeline, make_media())
    assert status == ProcessingStatus.COMPLETED
    assert percents[-1] == 100
