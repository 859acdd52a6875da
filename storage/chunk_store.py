import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

CHUNK_EXTENSIONS = ("webm", "mp4", "ogg", "wav")
DEFAULT_EXTENSION = "webm"

_CHUNK_NAME_RE = re.compile(r"^(\d+)\.(%s)$" % "|".join(CHUNK_EXTENSIONS))


class ChunkStoreError(Exception):
    pass


class StorageUnavailable(ChunkStoreError):
    pass


class WriteFailed(ChunkStoreError):
    pass


def detect_audio_format(data: bytes) -> str:
    """Pick a file extension from the container's magic bytes.

    Client-declared mime types are not trusted. Unknown buffers are stored
    as webm, which is what browsers' MediaRecorder produces by default.
    """
    if len(data) >= 8 and data[4:8] == b"ftyp":
        return "mp4"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    if data[:4] == b"OggS":
        return "ogg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    return DEFAULT_EXTENSION


class ChunkStore:
    """Raw audio chunks on disk, one directory per session, one file per index."""

    def __init__(self, root_dir: Path):
        self.root_dir = Path(root_dir)

    def area_path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.root_dir / session_id

    def ensure_area(self, session_id: str) -> Path:
        area = self.area_path(session_id)
        try:
            area.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create chunk area for session {session_id}: {e}") from e
        return area

    def write_chunk(self, session_id: str, chunk_index: int, data: bytes) -> Path:
        if chunk_index < 0:
            raise ValueError("chunk_index must be >= 0")
        area = self.ensure_area(session_id)
        ext = detect_audio_format(data)
        target = area / f"{chunk_index}.{ext}"

        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{chunk_index}.", suffix=".part", dir=area)
        except OSError as e:
            raise WriteFailed(f"Cannot open chunk file for session {session_id}: {e}") from e
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise WriteFailed(
                f"Failed to write chunk {chunk_index} for session {session_id}: {e}"
            ) from e

        # A re-sent index may come in a different container; keep only the latest.
        for other in CHUNK_EXTENSIONS:
            if other != ext:
                (area / f"{chunk_index}.{other}").unlink(missing_ok=True)

        logger.info(
            "Saved chunk %d for session %s (%d bytes, format: %s)",
            chunk_index, session_id, len(data), ext,
        )
        return target

    def list_chunks_ordered(self, session_id: str) -> list[Path]:
        area = self.area_path(session_id)
        if not area.is_dir():
            return []
        found = []
        for entry in area.iterdir():
            match = _CHUNK_NAME_RE.match(entry.name)
            if match and entry.is_file():
                found.append((int(match.group(1)), entry))
        found.sort(key=lambda item: item[0])
        return [path for _, path in found]

    def reclaim_area(self, session_id: str) -> None:
        try:
            area = self.area_path(session_id)
            if area.exists():
                shutil.rmtree(area)
                logger.info("Reclaimed chunk area for session %s", session_id)
        except (OSError, ValueError) as e:
            logger.error("Failed to reclaim chunk area for session %s: %s", session_id, e)
