"""
Tests for the Stage 2 upload worker

Time is faked: waits advance ``FakeClock`` instantly, so the gaps between
recorded upload attempts are exactly the backoff and rate-limit waits.
"""

import asyncio

import pytest

from note_importer.core.exceptions import RateLimitException, UploadError
from note_importer.models.queue_item import FileStatus
from note_importer.services.contracts import UploadResult
from note_importer.worker.upload_worker import UploadWorker
from tests.conftest import START_TIME, collapse, make_ready, run_until


def gaps(times):
    return [round(b - a, 3) for a, b in zip(times, times[1:])]


@pytest.fixture
def worker(uploader, state, clock, metrics):
    return UploadWorker(
        uploader,
        state,
        retry_base_delay=5.0,
        max_retries=3,
        rate_limit_buffer=2.0,
        poll_interval=1.0,
        metrics=metrics,
        sleep=clock.sleep,
        clock=clock.time
    )


async def drain(worker):
    worker.start()
    await run_until(lambda: worker.get_queue_length() == 0)
    worker.stop()
    await worker.join()


@pytest.mark.asyncio
async def test_successful_upload_removes_record(worker, store, reporter, uploader):
    make_ready(store, "/x/a.pdf")
    worker.add_to_queue("/x/a.pdf", "/x/a.pdf")

    await drain(worker)

    assert uploader.attempted() == ["/x/a.pdf"]
    assert store.get("/x/a.pdf") is None
    assert reporter.removed == ["/x/a.pdf"]
    assert collapse(reporter.statuses_for("/x/a.pdf"))[-2:] == ["uploading", "complete"]
    complete = reporter.last_item_progress("/x/a.pdf")
    assert complete.result.note_url == "https://x/1"


@pytest.mark.asyncio
async def test_keep_completed_records(worker, store, reporter):
    worker.keep_completed_records = True
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    item = store.get("/a")
    assert item.status == FileStatus.COMPLETE
    assert item.note_url == "https://x/1"
    assert reporter.removed == []


@pytest.mark.asyncio
async def test_add_to_queue_is_idempotent(worker):
    assert worker.add_to_queue("/a", "/a")
    assert not worker.add_to_queue("/a", "/a")
    assert worker.get_queue_length() == 1
    assert worker.get_queue_status()["current_file"] == "/a"


@pytest.mark.asyncio
async def test_backoff_grows_then_gives_up(worker, store, reporter, uploader):
    uploader.default = UploadResult(success=False, error="server said no")
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [5.0, 10.0]
    item = store.get("/a")
    assert item.status == FileStatus.ERROR
    assert item.error_message == "Upload failed after 3 retries: server said no"
    assert collapse(reporter.statuses_for("/a")) == [
        "uploading", "retrying", "uploading", "retrying", "uploading", "error"
    ]
    retrying = [e for e in reporter.item_progress if e.status == "retrying"]
    assert [e.error for e in retrying] == ["server said no", "server said no"]


@pytest.mark.asyncio
async def test_retry_time_is_persisted(worker, store, uploader, clock):
    uploader.script("/a", UploadResult(success=False, error="flaky"))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    worker.start()
    await run_until(lambda: store.get("/a").status == FileStatus.RETRYING)
    assert store.get("/a").retry_after == int(START_TIME * 1000) + 5000

    await run_until(lambda: worker.get_queue_length() == 0)
    worker.stop()
    await worker.join()
    assert store.get("/a") is None


@pytest.mark.asyncio
async def test_rate_limit_waits_duration_plus_buffer(worker, store, reporter, uploader):
    uploader.script("/a", UploadResult(success=False, rate_limit_duration=60))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [62.0]
    rate_limited = [e for e in reporter.item_progress if e.status == "rate-limited"]
    assert rate_limited[0].message == "Rate limited - retry in 60s"
    assert store.get("/a") is None
    assert reporter.last_item_progress("/a").result.note_url == "https://x/1"


@pytest.mark.asyncio
async def test_rate_limits_do_not_consume_retry_budget(worker, store, uploader):
    limited = UploadResult(success=False, rate_limit_duration=1)
    uploader.script("/a", limited, limited, limited, limited, limited)
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert len(uploader.attempt_times("/a")) == 6
    assert store.get("/a") is None


@pytest.mark.asyncio
async def test_head_of_line_retention(worker, store, uploader):
    uploader.script("/a", UploadResult(success=False, rate_limit_duration=30))
    make_ready(store, "/a")
    make_ready(store, "/b")
    worker.add_to_queue("/a", "/a")
    worker.add_to_queue("/b", "/b")

    await drain(worker)

    assert uploader.attempted() == ["/a", "/a", "/b"]


@pytest.mark.asyncio
async def test_critical_failure_is_terminal_and_next_item_proceeds(worker, store, reporter, uploader):
    uploader.script("/a", RuntimeError("socket closed"))
    make_ready(store, "/a")
    make_ready(store, "/b")
    worker.add_to_queue("/a", "/a")
    worker.add_to_queue("/b", "/b")

    await drain(worker)

    assert uploader.attempted() == ["/a", "/b"]
    item = store.get("/a")
    assert item.status == FileStatus.ERROR
    assert item.error_message == "socket closed"
    assert store.get("/b") is None


@pytest.mark.asyncio
async def test_stop_ends_loop(worker):
    worker.start()
    assert worker.is_running
    worker.stop()
    await worker.join()
    assert not worker.is_running


@pytest.mark.asyncio
async def test_restore_from_store_honours_retry_after(worker, store, uploader, clock):
    make_ready(store, "/ready")
    make_ready(store, "/limited")
    store.update_status("/limited", FileStatus.RATE_LIMITED, 10)
    store.update_retry_info("/limited", clock.now_ms() + 30_000)
    store.add_item("/pending")
    make_ready(store, "/errored")
    store.update_status("/errored", FileStatus.ERROR, 0, "old")

    assert worker.restore_from_store() == 2
    assert worker.get_queue_status()["current_file"] == "/ready"

    await drain(worker)

    assert uploader.attempted() == ["/ready", "/limited"]
    assert uploader.attempt_times("/limited")[0] >= START_TIME + 30


@pytest.mark.asyncio
async def test_metrics_record_outcomes(worker, store, uploader, metrics):
    uploader.script("/a", UploadResult(success=False, rate_limit_duration=5))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert metrics.get_sample("note_importer_upload_attempts_total", {"outcome": "rate_limited"}) == 1
    assert metrics.get_sample("note_importer_upload_attempts_total", {"outcome": "success"}) == 1
    assert metrics.get_sample("note_importer_upload_queue_depth") == 0


@pytest.mark.asyncio
async def test_zero_second_rate_limit_waits_only_the_buffer(worker, store, reporter, uploader):
    uploader.script("/a", UploadResult(success=False, rate_limit_duration=0))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [2.0]
    assert "retrying" not in reporter.statuses_for("/a")
    assert store.get("/a") is None


@pytest.mark.asyncio
async def test_thrown_rate_limit_error_is_not_critical(worker, store, reporter, uploader):
    uploader.script("/a", RuntimeError('Failed to create note: {"errorCode": 19, "rateLimitDuration": 30}'))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [32.0]
    assert "error" not in reporter.statuses_for("/a")
    rate_limited = [e for e in reporter.item_progress if e.status == "rate-limited"]
    assert rate_limited[0].message == "Rate limited - retry in 30s"
    assert store.get("/a") is None


@pytest.mark.asyncio
async def test_rate_limit_exception_waits_its_retry_after(worker, store, uploader):
    uploader.script("/a", RateLimitException(10))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [12.0]
    assert store.get("/a") is None


@pytest.mark.asyncio
async def test_upload_error_spends_retry_budget(worker, store, uploader):
    uploader.default = UploadError("service returned 503")
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [5.0, 10.0]
    assert store.get("/a").error_message == "Upload failed after 3 retries: service returned 503"


@pytest.mark.asyncio
async def test_removed_item_is_dropped_without_uploading(worker, store, reporter, uploader):
    make_ready(store, "/a")
    make_ready(store, "/b")
    worker.add_to_queue("/a", "/a")
    worker.add_to_queue("/b", "/b")
    store.delete("/a")

    await drain(worker)

    assert uploader.attempted() == ["/b"]
    assert reporter.statuses_for("/a") == []


@pytest.mark.asyncio
async def test_stop_lets_in_flight_upload_finish(worker, store, reporter, uploader):
    uploader.gate = asyncio.Event()
    make_ready(store, "/a")
    make_ready(store, "/b")
    worker.add_to_queue("/a", "/a")
    worker.add_to_queue("/b", "/b")

    worker.start()
    await run_until(lambda: uploader.in_flight == 1)
    worker.stop()
    uploader.gate.set()
    await worker.join()

    assert uploader.attempted() == ["/a"]
    assert store.get("/a") is None
    assert reporter.removed == ["/a"]
    assert store.get("/b").status == FileStatus.READY_TO_UPLOAD
    assert worker.get_queue_status()["current_file"] == "/b"


@pytest.mark.asyncio
async def test_restart_during_in_flight_upload_keeps_one_loop(worker, store, uploader):
    uploader.gate = asyncio.Event()
    make_ready(store, "/a")
    make_ready(store, "/b")
    worker.add_to_queue("/a", "/a")
    worker.add_to_queue("/b", "/b")

    worker.start()
    await run_until(lambda: uploader.in_flight == 1)
    worker.stop()
    worker.start()
    assert worker.is_running

    uploader.gate.set()
    await run_until(lambda: worker.get_queue_length() == 0)
    worker.stop()
    await worker.join()

    assert uploader.max_in_flight == 1
    assert uploader.attempted() == ["/a", "/b"]


@pytest.mark.asyncio
async def test_thrown_rate_limit_error_without_duration_waits_a_minute(worker, store, uploader):
    uploader.script("/a", RuntimeError('{"errorCode": 19}'))
    make_ready(store, "/a")
    worker.add_to_queue("/a", "/a")

    await drain(worker)

    assert gaps(uploader.attempt_times("/a")) == [62.0]
