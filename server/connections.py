import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_CLOSE_CODE = 4408
SHUTDOWN_CLOSE_CODE = 1001


@dataclass
class Connection:
    id: str
    websocket: Any
    last_seen: float
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConnectionManager:
    """Open client connections and their liveness.

    Owned by the app and passed to whatever needs it. The sweep closes
    connections whose heartbeat went silent; it never touches sessions.
    """

    def __init__(self, heartbeat_timeout: float = 90, sweep_interval: float = 15,
                 clock: Callable[[], float] = time.monotonic):
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, websocket) -> Connection:
        conn = Connection(id=uuid.uuid4().hex, websocket=websocket, last_seen=self._clock())
        self._connections[conn.id] = conn
        logger.info("Client connected: %s", conn.id)
        return conn

    def unregister(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.info("Client disconnected: %s", connection_id)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def heartbeat(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.last_seen = self._clock()

    async def send(self, connection_id: str, message: dict) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        async with conn.send_lock:
            await conn.websocket.send_json(message)
        return True

    def emitter_for(self, connection_id: str):
        async def emit(event: str, payload: dict) -> None:
            await self.send(connection_id, {"event": event, "data": payload})
        return emit

    async def _close(self, conn: Connection, code: int, reason: str) -> None:
        self.unregister(conn.id)
        try:
            await conn.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Closing %s failed (already gone?): %s", conn.id, e)

    async def sweep(self, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        stale = [
            conn for conn in self._connections.values()
            if now - conn.last_seen > self.heartbeat_timeout
        ]
        for conn in stale:
            logger.warning(
                "No heartbeat from %s for %.0fs, disconnecting", conn.id, now - conn.last_seen
            )
            await self._close(conn, HEARTBEAT_TIMEOUT_CLOSE_CODE, "heartbeat timeout")
        return [conn.id for conn in stale]

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="liveness-sweep")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            await self._close(conn, SHUTDOWN_CLOSE_CODE, "server shutting down")
