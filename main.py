import logging
import threading

import uvicorn

import config
from db.database import Database
from processing.aggregator import AudioAggregator
from processing.pipeline import PipelineSettings, SessionPipeline
from processing.summarizer import SummaryOptions, build_summarizer
from processing.transcriber import Transcriber
from server.app import create_app
from server.connections import ConnectionManager
from storage.chunk_store import ChunkStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("sessionscribe")


def build_app():
    # Ensure data directories exist
    for d in [config.DATA_DIR, config.CHUNKS_DIR]:
        d.mkdir(parents=True, exist_ok=True)

    db = Database(config.DB_PATH)
    transcriber = Transcriber(
        model_size=config.WHISPER_MODEL,
        language=config.WHISPER_LANGUAGE,
        task=config.WHISPER_TASK,
    )
    summarizer = build_summarizer(
        config.LLM_PROVIDER,
        anthropic_api_key=config.ANTHROPIC_API_KEY,
        anthropic_model=config.ANTHROPIC_MODEL,
        ollama_url=config.OLLAMA_URL,
        ollama_model=config.OLLAMA_MODEL,
        max_length=config.SUMMARY_MAX_LENGTH,
    )
    aggregator = AudioAggregator(
        ffmpeg_path=config.FFMPEG_PATH,
        timeout=config.FFMPEG_TIMEOUT_SECS,
        allow_binary_fallback=config.ALLOW_BINARY_CONCAT_FALLBACK,
    )
    pipeline = SessionPipeline(
        db,
        ChunkStore(config.CHUNKS_DIR),
        aggregator,
        transcriber,
        summarizer,
        PipelineSettings(
            language=config.WHISPER_LANGUAGE,
            task=config.WHISPER_TASK,
            summary_options=SummaryOptions(max_length=config.SUMMARY_MAX_LENGTH),
            stability_poll_interval=config.STABILITY_POLL_INTERVAL_SECS,
            stability_required_checks=config.STABILITY_REQUIRED_CHECKS,
            stability_timeout=config.STABILITY_TIMEOUT_SECS,
            finalize_timeout=config.FINALIZE_TIMEOUT_SECS or None,
        ),
    )
    connections = ConnectionManager(
        heartbeat_timeout=config.HEARTBEAT_TIMEOUT_SECS,
        sweep_interval=config.HEARTBEAT_SWEEP_INTERVAL_SECS,
    )
    return create_app(
        db,
        pipeline,
        connections,
        cors_origins=config.CORS_ORIGINS,
        shutdown_grace=config.SHUTDOWN_GRACE_SECS,
    )


def main():
    app = build_app()
    transcriber = app.state.pipeline.transcriber

    # Load Whisper model in background
    def preload_whisper():
        try:
            logger.info("Preloading Whisper model in background...")
            transcriber._load_model()
        except Exception as e:
            logger.warning("Could not preload Whisper: %s", e)

    threading.Thread(target=preload_whisper, daemon=True).start()

    logger.info("SessionScribe listening on ws://%s:%d/ws", config.HOST, config.PORT)
    server_config = uvicorn.Config(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="warning",
        timeout_graceful_shutdown=int(config.SHUTDOWN_GRACE_SECS) + 5,
    )
    uvicorn.Server(server_config).run()


if __name__ == "__main__":
    main()
