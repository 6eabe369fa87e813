"""Tests for the Stage 1 analysis driver."""

import asyncio

import pytest

from note_importer.models.queue_item import FileStatus
from note_importer.repositories.analysis_cache import content_hash
from note_importer.services.analysis_stage import AnalysisStage
from note_importer.services.processing_scheduler import ProcessingScheduler
from note_importer.worker.upload_worker import UploadWorker
from tests.conftest import FakeAnalyzer, FakeExtractor, collapse, make_ready, run_until

TAG_HINTS = ["finance", "2024", "travel"]


@pytest.fixture
def worker(uploader, state, clock):
    return UploadWorker(uploader, state, sleep=clock.sleep, clock=clock.time)


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def stage(extractor, analyzer, state, worker, cache, metrics):
    return AnalysisStage(
        extractor,
        analyzer,
        state,
        worker,
        scheduler=ProcessingScheduler(max_concurrent=3),
        cache=cache,
        tag_hints=lambda: TAG_HINTS,
        metrics=metrics
    )


@pytest.mark.asyncio
async def test_item_is_analysed_and_handed_to_upload(stage, store, reporter, worker):
    assert stage.admit("/x/a.pdf")
    stage.pump()
    await stage.run_until_idle()

    item = store.get("/x/a.pdf")
    assert item.status == FileStatus.READY_TO_UPLOAD
    assert item.progress == 100
    assert item.title == "Title of a.pdf"
    assert item.tags == ["finance", "2024"]
    assert item.content_hash == content_hash("extracted text")
    assert worker.get_queue_status()["current_file"] == "/x/a.pdf"
    assert collapse(reporter.statuses_for("/x/a.pdf")) == [
        "pending", "extracting", "analyzing", "ready-to-upload"
    ]


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(stage, store, analyzer):
    analyzer.gate = asyncio.Event()
    for index in range(5):
        stage.admit(f"/f{index}.txt")

    assert stage.pump() == ["/f0.txt", "/f1.txt", "/f2.txt"]
    assert stage.pump() == []
    await asyncio.sleep(0)

    stats = store.stats()
    assert stats.processing == 3
    assert stats.pending == 2

    analyzer.gate.set()
    await stage.run_until_idle()

    assert store.stats().ready_to_upload == 5
    assert stage.active_count == 0


@pytest.mark.asyncio
async def test_analysis_error_message_is_kept_verbatim(stage, store, analyzer, worker):
    analyzer.fail_message = "model refused the document"
    stage.admit("/x/a.pdf")
    stage.pump()
    await stage.run_until_idle()

    item = store.get("/x/a.pdf")
    assert item.status == FileStatus.ERROR
    assert item.error_message == "model refused the document"
    assert worker.get_queue_length() == 0


@pytest.mark.asyncio
async def test_extraction_failure_marks_error(stage, store, extractor):
    extractor.fail_with = ValueError("unreadable file")
    stage.admit("/x/a.pdf")
    stage.pump()
    await stage.run_until_idle()

    assert store.get("/x/a.pdf").error_message == "unreadable file"


@pytest.mark.asyncio
async def test_tags_are_filtered_against_hints(stage, store, analyzer):
    analyzer.tags = ["travel", "invented-tag"]
    stage.admit("/x/a.pdf")
    stage.pump()
    await stage.run_until_idle()

    assert store.get("/x/a.pdf").tags == ["travel"]


@pytest.mark.asyncio
async def test_note_analysis_uses_cache(stage, store, reporter, extractor, analyzer, cache, metrics):
    extractor.kind = "note"
    extractor.text = "note body"
    cache.save_analysis("guid-9", "Cached title", "Cached", ["finance", "deleted-tag"], content_hash("note body"))

    stage.admit("guid-9")
    stage.pump()
    await stage.run_until_idle()

    assert analyzer.calls == []
    item = store.get("guid-9")
    assert item.title == "Cached title"
    assert item.tags == ["finance"]
    assert [e.status for e in reporter.augment_progress] == ["extracting", "analyzing"]
    assert metrics.get_sample("note_importer_analysis_cache_lookups_total", {"result": "hit"}) == 1


@pytest.mark.asyncio
async def test_note_analysis_is_cached_on_miss(stage, extractor, analyzer, cache):
    extractor.kind = "note"
    stage.admit("guid-1")
    stage.pump()
    await stage.run_until_idle()

    assert analyzer.calls == ["guid-1"]
    assert cache.get_cached_analysis("guid-1", content_hash("extracted text")) is not None


@pytest.mark.asyncio
async def test_file_analysis_skips_cache(stage, extractor, cache):
    stage.admit("/x/a.pdf")
    stage.pump()
    await stage.run_until_idle()

    assert cache.get_cached_analysis("/x/a.pdf", content_hash("extracted text")) is None


def test_admit_skips_already_processed(stage, store, worker):
    make_ready(store, "/x/a.pdf")

    assert stage.admit("/x/a.pdf") is False
    assert worker.get_queue_length() == 1


def test_admit_existing_pending_item(stage):
    assert stage.admit("/x/a.pdf")
    assert stage.admit("/x/a.pdf") is False


@pytest.mark.asyncio
async def test_requeued_item_reuses_stored_analysis(stage, state, store, analyzer, extractor):
    make_ready(store, "/x/a.pdf", title="Kept title")
    state.set_error("/x/a.pdf", "Upload failed after 3 retries: boom")
    state.requeue("/x/a.pdf")

    stage.pump()
    await stage.run_until_idle()

    assert extractor.calls == []
    assert analyzer.calls == []
    item = store.get("/x/a.pdf")
    assert item.status == FileStatus.READY_TO_UPLOAD
    assert item.title == "Kept title"


@pytest.mark.asyncio
async def test_admit_folder_scans_recursively(stage, store, reporter, tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "a.pdf").write_text("a")
    (tmp_path / "sub" / "b.md").write_text("b")
    (tmp_path / "c.zip").write_text("c")

    admitted = await stage.admit_folder(str(tmp_path))
    await stage.run_until_idle()

    assert admitted == 2
    assert [b.status for b in reporter.batch_progress] == ["scanning", "processing", "processing", "complete"]
    assert reporter.batch_progress[-1].total_files == 2
    assert store.stats().ready_to_upload == 2


@pytest.mark.asyncio
async def test_item_removed_mid_analysis_is_not_enqueued(stage, store, reporter, worker, analyzer):
    analyzer.gate = asyncio.Event()
    stage.admit("/x/a.pdf")
    stage.pump()
    await run_until(lambda: analyzer.calls == ["a.pdf"])

    store.delete_all()
    analyzer.gate.set()
    await stage.run_until_idle()

    assert worker.get_queue_length() == 0
    assert store.get("/x/a.pdf") is None
    statuses = reporter.statuses_for("/x/a.pdf")
    assert "ready-to-upload" not in statuses
    assert "error" not in statuses
