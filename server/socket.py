import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from db.database import utcnow
from processing.pipeline import PipelineError, RequestContext, SessionPipeline
from processing.state_machine import InvalidTransition
from server.connections import ConnectionManager
from server.schemas import (
    ChunkPayload,
    HeartbeatPayload,
    SessionPayload,
    StartPayload,
    format_validation_error,
)
from storage.chunk_store import ChunkStoreError

logger = logging.getLogger(__name__)


class EventHandlers:
    """One method per client event; each returns the success ack payload."""

    def __init__(self, pipeline: SessionPipeline, connections: ConnectionManager):
        self.pipeline = pipeline
        self.connections = connections

    async def start(self, ctx: RequestContext, data: dict) -> dict:
        payload = StartPayload.model_validate(data)
        session = await self.pipeline.start(ctx, payload.userId, payload.title)
        return {"sessionId": session["id"], "timestamp": session["started_at"]}

    async def chunk(self, ctx: RequestContext, data: dict) -> dict:
        payload = ChunkPayload.model_validate(data)
        chunk = await self.pipeline.chunk_arrived(
            ctx, payload.sessionId, payload.chunkIndex, payload.audio_bytes(), payload.speaker
        )
        return {
            "chunkId": chunk["id"],
            "chunkIndex": chunk["chunk_index"],
            "sessionId": payload.sessionId,
        }

    async def pause(self, ctx: RequestContext, data: dict) -> dict:
        payload = SessionPayload.model_validate(data)
        await self.pipeline.pause(ctx, payload.sessionId)
        return {"sessionId": payload.sessionId}

    async def resume(self, ctx: RequestContext, data: dict) -> dict:
        payload = SessionPayload.model_validate(data)
        await self.pipeline.resume(ctx, payload.sessionId)
        return {"sessionId": payload.sessionId}

    async def end(self, ctx: RequestContext, data: dict) -> dict:
        payload = SessionPayload.model_validate(data)
        session = await self.pipeline.end(ctx, payload.sessionId)
        return {"sessionId": payload.sessionId, "timestamp": session["ended_at"]}

    async def heartbeat(self, ctx: RequestContext, data: dict) -> dict:
        HeartbeatPayload.model_validate(data)
        self.connections.heartbeat(ctx.connection_id)
        return {"serverTime": utcnow()}

    def lookup(self, event):
        if event not in ("start", "chunk", "pause", "resume", "end", "heartbeat"):
            return None
        return getattr(self, event)


async def handle_message(handlers: EventHandlers, ctx: RequestContext, raw: str | None) -> None:
    connections = handlers.connections

    async def reply(ack_id, data: dict) -> None:
        if ack_id is None:
            return
        await connections.send(ctx.connection_id, {"event": "ack", "ack": ack_id, "data": data})

    async def fail(ack_id, message: str) -> None:
        await reply(ack_id, {"success": False, "error": message})
        await ctx.emit("error", {"message": message, "timestamp": utcnow()})

    if raw is None:
        await fail(None, "Binary frames are not supported")
        return

    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await fail(None, "Invalid JSON")
        return
    if not isinstance(message, dict):
        await fail(None, "Message must be a JSON object")
        return

    ack_id = message.get("ack")
    event = message.get("event")
    data = message.get("data") or {}
    handler = handlers.lookup(event)
    if handler is None:
        await fail(ack_id, f"Unknown event: {event}")
        return
    if not isinstance(data, dict):
        await fail(ack_id, "data must be a JSON object")
        return

    try:
        result = await handler(ctx, data)
    except ValidationError as e:
        await fail(ack_id, format_validation_error(e))
    except (PipelineError, InvalidTransition, ChunkStoreError) as e:
        logger.info("Event '%s' rejected: %s", event, e)
        await fail(ack_id, str(e))
    except Exception:
        logger.exception("Unhandled error processing '%s'", event)
        await fail(ack_id, "Internal server error")
    else:
        await reply(ack_id, {"success": True, **result})


def create_socket_router(pipeline: SessionPipeline, connections: ConnectionManager) -> APIRouter:
    router = APIRouter()
    handlers = EventHandlers(pipeline, connections)

    @router.websocket("/ws")
    async def session_socket(websocket: WebSocket):
        await websocket.accept()
        conn = connections.register(websocket)
        ctx = RequestContext(connection_id=conn.id, emitter=connections.emitter_for(conn.id))
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                await handle_message(handlers, ctx, frame.get("text"))
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # receive after the liveness sweep already closed the socket
            if connections.get(conn.id) is not None:
                raise
            logger.debug("Connection %s closed by server: %s", conn.id, e)
        finally:
            connections.unregister(conn.id)

    return router
