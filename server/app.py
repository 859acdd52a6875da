import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from db.database import Database
from processing.pipeline import SessionPipeline
from server.connections import ConnectionManager
from server.routes import create_router
from server.socket import create_socket_router

logger = logging.getLogger(__name__)


def create_app(db: Database, pipeline: SessionPipeline, connections: ConnectionManager,
               cors_origins: list[str] | None = None, shutdown_grace: float = 10,
               recover_on_startup: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        connections.start()
        if recover_on_startup:
            resumed = pipeline.recover_pending()
            if resumed:
                logger.info("Resuming %d unfinished session(s)", len(resumed))
        yield
        logger.info("Shutting down...")
        await connections.stop()
        await connections.close_all()
        await pipeline.shutdown(shutdown_grace)

    app = FastAPI(title="SessionScribe", version="0.1.0", lifespan=lifespan)
    app.state.db = db
    app.state.pipeline = pipeline
    app.state.connections = connections

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(create_router(db, pipeline.chunk_store, pipeline), prefix="/api")
    app.include_router(create_socket_router(pipeline, connections))

    return app
