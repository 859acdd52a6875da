import asyncio
from pathlib import Path

import pytest

from db.database import Database
from processing.aggregator import AudioAggregator
from processing.pipeline import PipelineSettings, RequestContext, SessionPipeline
from processing.summarizer import SummarizationBackend, Summarizer
from processing.transcriber import TranscriptionFailed, TranscriptionResult
from storage.chunk_store import ChunkStore

WEBM_HEADER = b"\x1a\x45\xdf\xa3" + b"\x00" * 12


class FakeTranscriber:
    def __init__(self, text: str = "hello from the whole session", fail: bool = False):
        self.text = text
        self.fail = fail
        self.calls: list[Path] = []

    def transcribe(self, audio_path, language=None, task=None) -> TranscriptionResult:
        self.calls.append(Path(audio_path))
        if self.fail:
            raise TranscriptionFailed("decoder exploded")
        return TranscriptionResult(text=self.text, duration_ms=4200, language=language)


class FakeBackend(SummarizationBackend):
    name = "fake"

    def __init__(self, answer: str | None = None, error: Exception | None = None):
        self.answer = answer or (
            '{"summary": "Team synced on the release.", "keyPoints": ["ship friday"], '
            '"actionItems": ["write notes"], "topics": ["release"]}'
        )
        self.error = error
        self.prompts: list[str] = []

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.answer


class EventRecorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def named(self, name: str) -> list[dict]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def chunk_store(tmp_path: Path) -> ChunkStore:
    return ChunkStore(tmp_path / "chunks")


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        stability_poll_interval=0,
        stability_required_checks=2,
        stability_timeout=5,
        finalize_timeout=30,
    )


@pytest.fixture
def pipeline(db, chunk_store, transcriber, backend, pipeline_settings, monkeypatch) -> SessionPipeline:
    # ffmpeg is not needed in tests: a missing binary triggers the raw-concat path
    aggregator = AudioAggregator(ffmpeg_path="/nonexistent/ffmpeg")
    monkeypatch.setattr("processing.pipeline.probe_duration_sec", lambda path: 7)
    return SessionPipeline(
        db, chunk_store, aggregator, transcriber, Summarizer(backend), pipeline_settings
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def ctx(recorder) -> RequestContext:
    return RequestContext(connection_id="test-conn", emitter=recorder)


def run(coro):
    return asyncio.run(coro)
