"""
Shared pytest fixtures

Every test gets its own SQLite queue database under ``tmp_path``. Time is
driven by ``FakeClock`` so backoff and rate-limit waits run instantly.
"""

import asyncio
from typing import List, Optional, Sequence, Union

import pytest

from note_importer.config import Settings
from note_importer.core.exceptions import AnalysisError
from note_importer.database import create_db_and_tables, create_db_engine
from note_importer.models.queue_item import FileStatus
from note_importer.repositories.analysis_cache import AnalysisCacheRepository
from note_importer.repositories.queue_store import QueueStore
from note_importer.services.contracts import AnalysisResult, ExtractedContent, UploadResult
from note_importer.services.progress_reporter import RecordingProgressReporter
from note_importer.services.prometheus_metrics import PrometheusMetricsService
from note_importer.services.state_manager import ItemStateManager

START_TIME = 1_700_000_000.0


class FakeClock:
    """Wall clock whose ``sleep`` advances time instead of waiting"""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def now_ms(self) -> int:
        return int(self.now * 1000)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeExtractor:
    def __init__(self, kind: str = "file", text: str = "extracted text", fail_with: Optional[Exception] = None):
        self.kind = kind
        self.text = text
        self.fail_with = fail_with
        self.calls: List[str] = []

    async def extract(self, key: str) -> ExtractedContent:
        self.calls.append(key)
        if self.fail_with:
            raise self.fail_with
        return ExtractedContent(text=self.text, name=key.rsplit("/", 1)[-1], kind=self.kind)


class FakeAnalyzer:
    def __init__(self, tags: Sequence[str] = ("finance", "2024"), fail_message: Optional[str] = None):
        self.tags = list(tags)
        self.fail_message = fail_message
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def analyze(self, raw_content, name, kind, tag_hints=None) -> AnalysisResult:
        self.calls.append(name)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_message:
            raise AnalysisError(self.fail_message)
        return AnalysisResult(title=f"Title of {name}", description="A short description", tags=list(self.tags))


Outcome = Union[UploadResult, Exception]


class ScriptedUploader:
    """
    Replays scripted outcomes per artifact, falling back to ``default``.
    Records ``(artifact_ref, time)`` for every attempt. When ``gate`` is set,
    each attempt blocks until the event fires.
    """

    def __init__(self, clock: FakeClock, default: Optional[Outcome] = None):
        self.clock = clock
        self.default = default or UploadResult(success=True, note_url="https://x/1", note_guid="guid-1")
        self.scripts = {}
        self.attempts: List[tuple] = []
        self.existing_guids = set()
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, artifact_ref: str, *outcomes: Outcome) -> None:
        self.scripts[artifact_ref] = list(outcomes)

    async def upload(self, artifact_ref: str) -> UploadResult:
        self.attempts.append((artifact_ref, self.clock.time()))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.in_flight -= 1

        outcomes = self.scripts.get(artifact_ref)
        outcome = outcomes.pop(0) if outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def note_exists(self, guid: str) -> bool:
        return guid in self.existing_guids

    def attempted(self) -> List[str]:
        return [ref for ref, _ in self.attempts]

    def attempt_times(self, artifact_ref: str) -> List[float]:
        return [at for ref, at in self.attempts if ref == artifact_ref]


async def run_until(predicate, max_steps: int = 20000) -> None:
    """Yield to the event loop until ``predicate()`` holds"""
    for _ in range(max_steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def collapse(statuses: Sequence[str]) -> List[str]:
    """Drop consecutive duplicates from a status sequence"""
    result: List[str] = []
    for status in statuses:
        if not result or result[-1] != status:
            result.append(status)
    return result


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture
def engine(database_url):
    db_engine = create_db_engine(database_url, echo=False)
    create_db_and_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine) -> QueueStore:
    return QueueStore(engine)


@pytest.fixture
def reporter() -> RecordingProgressReporter:
    return RecordingProgressReporter()


@pytest.fixture
def state(store, reporter) -> ItemStateManager:
    return ItemStateManager(store, reporter)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(engine, clock) -> AnalysisCacheRepository:
    return AnalysisCacheRepository(engine, ttl_hours=24, clock=clock.time)


@pytest.fixture
def metrics() -> PrometheusMetricsService:
    return PrometheusMetricsService()


@pytest.fixture
def uploader(clock) -> ScriptedUploader:
    return ScriptedUploader(clock)


@pytest.fixture
def test_settings(database_url) -> Settings:
    return Settings(
        database_url=database_url,
        max_concurrent_analysis=3,
        upload_retry_base_delay=5.0,
        max_upload_retries=3,
        rate_limit_buffer=2.0,
        poll_interval=1.0,
        keep_completed_records=False,
        metrics_enabled=True,
    )


def make_ready(store: QueueStore, key: str, title: str = "T") -> None:
    """Put ``key`` into the store already analysed and waiting for upload"""
    store.add_item(key)
    store.update_analysis(key, title, "D", ["a"])
    store.update_status(key, FileStatus.READY_TO_UPLOAD, 100)
