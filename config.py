import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("SESSIONSCRIBE_DATA_DIR", str(BASE_DIR / "data")))
CHUNKS_DIR = DATA_DIR / "chunks"
DB_PATH = DATA_DIR / "sessionscribe.db"

# Server
HOST = os.getenv("SESSIONSCRIBE_HOST", "127.0.0.1")
PORT = int(os.getenv("SESSIONSCRIBE_PORT", "4001"))
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("SESSIONSCRIBE_CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

# Whisper
WHISPER_MODEL = os.getenv("SESSIONSCRIBE_WHISPER_MODEL", "base")
WHISPER_LANGUAGE = os.getenv("SESSIONSCRIBE_LANGUAGE", "en")
WHISPER_TASK = os.getenv("SESSIONSCRIBE_WHISPER_TASK", "transcribe")

# LLM
LLM_PROVIDER = os.getenv("SESSIONSCRIBE_LLM_PROVIDER", "stub")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("SESSIONSCRIBE_ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")
OLLAMA_MODEL = os.getenv("SESSIONSCRIBE_OLLAMA_MODEL", "llama3")
OLLAMA_URL = os.getenv("SESSIONSCRIBE_OLLAMA_URL", "http://localhost:11434")
SUMMARY_MAX_LENGTH = int(os.getenv("SESSIONSCRIBE_SUMMARY_MAX_LENGTH", "500"))

# Chunk aggregation
FFMPEG_PATH = os.getenv("SESSIONSCRIBE_FFMPEG_PATH", "ffmpeg")
FFMPEG_TIMEOUT_SECS = float(os.getenv("SESSIONSCRIBE_FFMPEG_TIMEOUT_SECS", "300"))
ALLOW_BINARY_CONCAT_FALLBACK = _env_bool("SESSIONSCRIBE_ALLOW_BINARY_CONCAT_FALLBACK", True)

# Wait for the aggregated file to settle on disk
STABILITY_POLL_INTERVAL_SECS = float(os.getenv("SESSIONSCRIBE_STABILITY_POLL_INTERVAL_SECS", "0.5"))
STABILITY_REQUIRED_CHECKS = int(os.getenv("SESSIONSCRIBE_STABILITY_REQUIRED_CHECKS", "3"))
STABILITY_TIMEOUT_SECS = float(os.getenv("SESSIONSCRIBE_STABILITY_TIMEOUT_SECS", "30"))

# Overall finalize budget (0 = no limit)
FINALIZE_TIMEOUT_SECS = float(os.getenv("SESSIONSCRIBE_FINALIZE_TIMEOUT_SECS", "1800"))

# Heartbeat / connections
HEARTBEAT_SWEEP_INTERVAL_SECS = float(os.getenv("SESSIONSCRIBE_HEARTBEAT_SWEEP_INTERVAL_SECS", "15"))
HEARTBEAT_TIMEOUT_SECS = float(os.getenv("SESSIONSCRIBE_HEARTBEAT_TIMEOUT_SECS", "90"))
SHUTDOWN_GRACE_SECS = float(os.getenv("SESSIONSCRIBE_SHUTDOWN_GRACE_SECS", "10"))
