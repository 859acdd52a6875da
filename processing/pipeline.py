"""Session pipeline: chunk intake, lifecycle control and the finalize sequence.

Control events for one session are serialized with a per-session asyncio
lock; the storage layer's conditional update backs that up. Finalization
runs as a background task and always ends with the session in `completed`.
"""
import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from db.database import Database, utcnow
from processing.aggregator import AudioAggregator, probe_duration_sec
from processing.state_machine import InvalidTransition, SessionState, SessionStateMachine
from processing.summarizer import SummarizationFailed, Summarizer, SummaryOptions, SummaryResult
from processing.transcriber import TranscriptionFailed, Transcriber
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)

FALLBACK_MARKER = "[Fallback]"
TRANSCRIPTION_PLACEHOLDER = "[Transcription unavailable] The audio for this session could not be transcribed."
FALLBACK_PREVIEW_CHARS = 300

Emitter = Callable[[str, dict], Awaitable[None]]


class PipelineError(Exception):
    pass


class SessionNotFound(PipelineError):
    pass


class ChunkRejected(PipelineError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Chunk rejected: {reason}")


class NoChunksFound(PipelineError):
    pass


class FileNotReady(PipelineError):
    pass


class FinalizeTimeout(PipelineError):
    pass


async def _discard(event: str, payload: dict) -> None:
    logger.debug("No client attached, dropping '%s' event", event)


@dataclass
class RequestContext:
    """Who asked for an operation and where its notifications go."""

    connection_id: str | None = None
    emitter: Emitter = _discard

    @classmethod
    def detached(cls) -> "RequestContext":
        return cls()

    async def emit(self, event: str, payload: dict) -> None:
        try:
            await self.emitter(event, payload)
        except Exception as e:
            # The client may be gone; notifications never fail the pipeline.
            logger.warning("Could not emit '%s' to %s: %s", event, self.connection_id, e)


@dataclass
class PipelineSettings:
    language: str = "en"
    task: str = "transcribe"
    summary_options: SummaryOptions = field(default_factory=SummaryOptions)
    stability_poll_interval: float = 0.5
    stability_required_checks: int = 3
    stability_timeout: float = 30.0
    finalize_timeout: float | None = 1800.0
    download_prefix: str = "/api/download"


def fallback_summary(transcript: str, reason: str) -> SummaryResult:
    preview = " ".join(transcript.split())[:FALLBACK_PREVIEW_CHARS]
    if not preview:
        preview = "(no transcript)"
    return SummaryResult(
        content=f"{FALLBACK_MARKER} Summary unavailable ({reason}). Transcript preview: {preview}",
    )


class SessionPipeline:
    def __init__(self, db: Database, chunk_store: ChunkStore, aggregator: AudioAggregator,
                 transcriber: Transcriber, summarizer: Summarizer,
                 settings: PipelineSettings | None = None):
        self.db = db
        self.chunk_store = chunk_store
        self.aggregator = aggregator
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.settings = settings or PipelineSettings()
        self.state_machine = SessionStateMachine(db)
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    async def _run_blocking(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def forget(self, session_id: str) -> None:
        """Drop per-session bookkeeping once a session can no longer change."""
        self._locks.pop(session_id, None)

    async def _load_session(self, session_id: str) -> dict:
        session = await self._run_blocking(self.db.get_session, session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    @asynccontextmanager
    async def _session_guard(self, session_id: str):
        """Hold the session's lock and yield its current row.

        Unknown ids never get a lock, and the lock is released for good once
        the session is gone or completed.
        """
        if session_id not in self._locks:
            await self._load_session(session_id)
        lock = self._lock_for(session_id)
        async with lock:
            session = await self._run_blocking(self.db.get_session, session_id)
            if session is None or session["state"] == SessionState.COMPLETED.value:
                if self._locks.get(session_id) is lock:
                    del self._locks[session_id]
            if session is None:
                raise SessionNotFound(f"Session {session_id} not found")
            yield session

    def download_reference(self, session_id: str) -> str:
        return f"{self.settings.download_prefix}/{session_id}"

    @property
    def pending_tasks(self) -> list[asyncio.Task]:
        return list(self._tasks.values())

    async def _emit_status(self, ctx: RequestContext, session_id: str, state: SessionState) -> None:
        await ctx.emit("status", {
            "status": state.value,
            "sessionId": session_id,
            "timestamp": utcnow(),
        })

    # -- Control signals --

    async def start(self, ctx: RequestContext, user_id: str, title: str | None = None) -> dict:
        session = await self._run_blocking(self.db.insert_session, user_id, title, utcnow())
        logger.info("Session started: %s for user %s", session["id"], user_id)
        await self._emit_status(ctx, session["id"], SessionState.RECORDING)
        return session

    async def chunk_arrived(self, ctx: RequestContext, session_id: str, chunk_index: int,
                            data: bytes, speaker: str | None = None) -> dict:
        async with self._session_guard(session_id) as session:
            if session["state"] != SessionState.RECORDING.value:
                raise ChunkRejected("not recording")
            await self._run_blocking(self.chunk_store.write_chunk, session_id, chunk_index, data)
            chunk = await self._run_blocking(
                self.db.upsert_chunk, session_id, chunk_index, speaker, utcnow()
            )
        return chunk

    async def pause(self, ctx: RequestContext, session_id: str) -> dict:
        return await self._change_state(ctx, session_id, SessionState.PAUSED)

    async def resume(self, ctx: RequestContext, session_id: str) -> dict:
        return await self._change_state(ctx, session_id, SessionState.RECORDING)

    async def _change_state(self, ctx: RequestContext, session_id: str,
                            requested: SessionState) -> dict:
        async with self._session_guard(session_id) as session:
            updated = await self._run_blocking(self.state_machine.apply, session, requested)
        await self._emit_status(ctx, session_id, requested)
        return updated

    async def end(self, ctx: RequestContext, session_id: str) -> dict:
        async with self._session_guard(session_id) as session:
            fields = {} if session["ended_at"] else {"ended_at": utcnow()}
            updated = await self._run_blocking(
                self.state_machine.apply, session, SessionState.PROCESSING, **fields
            )
        await self._emit_status(ctx, session_id, SessionState.PROCESSING)
        self._schedule_finalize(ctx, session_id)
        return updated

    # -- Finalize sequence --

    def _schedule_finalize(self, ctx: RequestContext, session_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.finalize(ctx, session_id), name=f"finalize-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(session_id, None))
        return task

    async def wait_for_finalize(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    async def finalize(self, ctx: RequestContext, session_id: str) -> None:
        """Run the finalize steps; any failure still ends in `completed`."""
        budget = self.settings.finalize_timeout
        try:
            if budget:
                try:
                    await asyncio.wait_for(self._finalize_steps(ctx, session_id), timeout=budget)
                except asyncio.TimeoutError as e:
                    raise FinalizeTimeout(
                        f"Finalizing session {session_id} took longer than {budget:.0f}s"
                    ) from e
            else:
                await self._finalize_steps(ctx, session_id)
        except asyncio.CancelledError:
            # Shutdown: the session stays in `processing` and is picked up on next start.
            logger.warning("Finalize of session %s cancelled", session_id)
            raise
        except Exception as e:
            logger.exception("Finalize failed for session %s", session_id)
            await self._force_complete(ctx, session_id, e)
        await self._run_blocking(self.chunk_store.reclaim_area, session_id)
        self.forget(session_id)

    async def _finalize_steps(self, ctx: RequestContext, session_id: str) -> None:
        chunk_paths = await self._run_blocking(self.chunk_store.list_chunks_ordered, session_id)
        if not chunk_paths:
            raise NoChunksFound(f"No chunks found for session {session_id}")

        area = self.chunk_store.area_path(session_id)
        output_path = area / f"session{chunk_paths[0].suffix}"
        await self._run_blocking(self.aggregator.aggregate, chunk_paths, output_path)
        await self.wait_for_stable_file(output_path)

        transcript_text, transcribed_ms = await self._transcribe(session_id, output_path)
        first_chunk = await self._store_session_transcript(session_id, transcript_text)
        await ctx.emit("transcript", {
            "sessionId": session_id,
            "chunkIndex": first_chunk["chunk_index"],
            "text": transcript_text,
            "speaker": first_chunk["speaker"],
            "timestamp": utcnow(),
        })

        duration_sec = await self._run_blocking(probe_duration_sec, output_path)
        if duration_sec is None and transcribed_ms is not None:
            duration_sec = round(transcribed_ms / 1000)

        chunks = await self._run_blocking(self.db.list_chunks, session_id)
        full_transcript = "\n".join(c["text"] for c in chunks)

        try:
            result = await self._run_blocking(
                self.summarizer.summarize, full_transcript, self.settings.summary_options
            )
        except SummarizationFailed as e:
            logger.warning("Summarization failed for session %s, using fallback: %s", session_id, e)
            result = fallback_summary(full_transcript, "summarization failed")

        summary = await self._run_blocking(
            self.db.insert_summary, session_id, result.content, result.key_points, result.action_items
        )
        logger.info("Saved summary %s for session %s", summary["id"], session_id)

        if await self._complete(session_id, duration_sec=duration_sec):
            await self._emit_completed(ctx, session_id, summary, result.topics)

    async def _transcribe(self, session_id: str, audio_path: Path) -> tuple[str, int | None]:
        try:
            result = await self._run_blocking(
                self.transcriber.transcribe, audio_path, self.settings.language, self.settings.task
            )
        except TranscriptionFailed as e:
            logger.warning("Transcription failed for session %s, using placeholder: %s", session_id, e)
            return TRANSCRIPTION_PLACEHOLDER, None
        return result.text, result.duration_ms

    async def _store_session_transcript(self, session_id: str, text: str) -> dict:
        # The whole-session transcript lives on the first chunk's row.
        chunks = await self._run_blocking(self.db.list_chunks, session_id)
        if chunks:
            first = chunks[0]
        else:
            first = await self._run_blocking(self.db.upsert_chunk, session_id, 0, None, utcnow())
        await self._run_blocking(self.db.update_chunk_text, first["id"], text)
        return first

    async def wait_for_stable_file(self, path: Path) -> int:
        """Poll until the file size is non-zero and unchanged for several checks."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.stability_timeout
        required = max(1, self.settings.stability_required_checks)
        last_size = -1
        observed = 0
        while True:
            size = path.stat().st_size if path.exists() else 0
            if size > 0 and size == last_size:
                observed += 1
            else:
                observed = 1 if size > 0 else 0
            last_size = size
            if observed >= required:
                return size
            if loop.time() >= deadline:
                raise FileNotReady(f"{path.name} did not reach a stable size in time")
            await asyncio.sleep(self.settings.stability_poll_interval)

    async def _complete(self, session_id: str, **fields) -> bool:
        """Move the session to `completed`. True only for the caller that did it."""
        async with self._lock_for(session_id):
            session = await self._run_blocking(self.db.get_session, session_id)
            if session is None or session["state"] != SessionState.PROCESSING.value:
                return False
            if not session["ended_at"]:
                fields["ended_at"] = utcnow()
            if fields.get("duration_sec") is None:
                fields.pop("duration_sec", None)
            try:
                await self._run_blocking(
                    self.state_machine.apply, session, SessionState.COMPLETED, **fields
                )
            except InvalidTransition:
                return False
        logger.info("Session %s completed", session_id)
        return True

    async def _emit_completed(self, ctx: RequestContext, session_id: str, summary: dict,
                              topics: list[str]) -> None:
        await self._emit_status(ctx, session_id, SessionState.COMPLETED)
        await ctx.emit("completed", {
            "sessionId": session_id,
            "summaryId": summary["id"],
            "summary": summary["content"],
            "keyPoints": summary["key_points"],
            "actionItems": summary["action_items"],
            "topics": topics,
            "downloadReference": self.download_reference(session_id),
            "timestamp": utcnow(),
        })

    async def _force_complete(self, ctx: RequestContext, session_id: str, error: Exception) -> None:
        message = str(error) if isinstance(error, PipelineError) else f"Processing failed: {error}"
        summary = None
        try:
            chunks = await self._run_blocking(self.db.list_chunks, session_id)
            transcript = "\n".join(c["text"] for c in chunks)
            fb = fallback_summary(transcript, "processing failed")
            summary = await self._run_blocking(
                self.db.insert_summary, session_id, fb.content, fb.key_points, fb.action_items
            )
        except Exception:
            logger.exception("Could not store fallback summary for session %s", session_id)

        try:
            completed = await self._complete(session_id)
        except Exception:
            logger.exception("Could not force session %s to completed", session_id)
            completed = False

        await ctx.emit("error", {"message": message, "sessionId": session_id, "timestamp": utcnow()})
        if not completed:
            return
        if summary is not None:
            await self._emit_completed(ctx, session_id, summary, [])
        else:
            await self._emit_status(ctx, session_id, SessionState.COMPLETED)

    # -- Process lifecycle --

    def recover_pending(self) -> list[str]:
        """Re-trigger finalize for sessions a previous process left in `processing`."""
        pending = self.db.list_sessions_in_state(SessionState.PROCESSING.value)
        for session in pending:
            if session["id"] in self._tasks:
                continue
            logger.info("Resuming finalize for session %s", session["id"])
            self._schedule_finalize(RequestContext.detached(), session["id"])
        return [s["id"] for s in pending]

    async def shutdown(self, grace: float) -> None:
        tasks = self.pending_tasks
        if not tasks:
            return
        logger.info("Waiting up to %.0fs for %d finalize task(s)", grace, len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
