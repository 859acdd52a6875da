import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from db.database import Database, utcnow
from processing.export import render_transcript
from processing.pipeline import SessionPipeline
from processing.state_machine import SessionState
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


def _session_out(rec: dict) -> dict:
    return {
        "id": rec["id"],
        "userId": rec["user_id"],
        "title": rec["title"],
        "state": rec["state"],
        "startedAt": rec["started_at"],
        "endedAt": rec["ended_at"],
        "durationSec": rec["duration_sec"],
    }


def create_router(db: Database, chunk_store: ChunkStore, pipeline: SessionPipeline) -> APIRouter:
    router = APIRouter()

    def _require_session(session_id: str) -> dict:
        rec = db.get_session(session_id)
        if not rec:
            raise HTTPException(404, "Session not found")
        return rec

    # -- Status --

    @router.get("/health")
    def health():
        return {"status": "ok", "timestamp": utcnow()}

    # -- Sessions --

    @router.get("/sessions")
    def list_sessions(user_id: str | None = None):
        return [_session_out(r) for r in db.list_sessions(user_id)]

    @router.get("/sessions/{session_id}")
    def get_session(session_id: str):
        rec = _require_session(session_id)
        result = _session_out(rec)
        result["chunks"] = [
            {
                "id": c["id"],
                "chunkIndex": c["chunk_index"],
                "text": c["text"],
                "speaker": c["speaker"],
                "timestamp": c["timestamp"],
            }
            for c in db.list_chunks(session_id)
        ]
        summary = db.get_summary(session_id)
        result["summary"] = None
        if summary:
            result["summary"] = {
                "id": summary["id"],
                "content": summary["content"],
                "keyPoints": summary["key_points"],
                "actionItems": summary["action_items"],
            }
        result["downloadReference"] = pipeline.download_reference(session_id)
        return result

    @router.get("/download/{session_id}")
    def download_transcript(session_id: str):
        rec = _require_session(session_id)
        body = render_transcript(rec, db.list_chunks(session_id), db.get_summary(session_id))
        filename = f"transcript-{session_id}.txt"
        return PlainTextResponse(
            body,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.delete("/sessions/{session_id}")
    def delete_session(session_id: str):
        rec = _require_session(session_id)
        if rec["state"] == SessionState.PROCESSING.value:
            raise HTTPException(409, "Session is being processed")
        db.delete_session(session_id)
        pipeline.forget(session_id)
        chunk_store.reclaim_area(session_id)
        logger.info("Deleted session %s", session_id)
        return {"deleted": True}

    return router
