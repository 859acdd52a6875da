import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from pydub import AudioSegment

logger = logging.getLogger(__name__)


class NoChunksToAggregate(Exception):
    pass


class AggregationFailed(Exception):
    pass


def _manifest_line(path: Path) -> str:
    # concat demuxer quoting: close the quote, escape, reopen
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'"


class AudioAggregator:
    """Turns an ordered list of chunk files into one decodable audio file.

    Time-sliced recordings only carry a container header in the first chunk,
    so chunks are joined with ffmpeg's concat demuxer (stream copy, no
    re-encode) instead of splicing bytes.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 300,
                 allow_binary_fallback: bool = True):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.allow_binary_fallback = allow_binary_fallback

    def aggregate(self, chunk_paths: list[Path], output_path: Path) -> Path:
        chunk_paths = [Path(p) for p in chunk_paths]
        output_path = Path(output_path)
        if not chunk_paths:
            raise NoChunksToAggregate("No chunks to aggregate")

        if len(chunk_paths) == 1:
            try:
                shutil.copyfile(chunk_paths[0], output_path)
            except OSError as e:
                raise AggregationFailed(f"Failed to copy single chunk: {e}") from e
            logger.info("Single chunk copied to %s", output_path)
        else:
            try:
                self._concat_with_ffmpeg(chunk_paths, output_path)
            except AggregationFailed as e:
                if not self.allow_binary_fallback:
                    raise
                logger.warning(
                    "ffmpeg concat failed (%s); falling back to raw byte concatenation. "
                    "Audio after the first chunk may not decode.", e,
                )
                self._concat_bytes(chunk_paths, output_path)

        size = output_path.stat().st_size if output_path.exists() else 0
        if size == 0:
            raise AggregationFailed(f"Aggregated file {output_path.name} is empty")
        logger.info("Aggregated %d chunks -> %s (%d bytes)", len(chunk_paths), output_path, size)
        return output_path

    def _concat_with_ffmpeg(self, chunk_paths: list[Path], output_path: Path) -> None:
        manifest = tempfile.NamedTemporaryFile(
            "w", suffix=".txt", prefix="concat-", dir=output_path.parent,
            delete=False, encoding="utf-8",
        )
        manifest_path = Path(manifest.name)
        try:
            with manifest:
                manifest.write("\n".join(_manifest_line(p) for p in chunk_paths))
            cmd = [
                self.ffmpeg_path,
                "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", str(manifest_path),
                "-c", "copy",
                str(output_path),
            ]
            logger.info("Concatenating %d chunks with ffmpeg...", len(chunk_paths))
            try:
                result = subprocess.run(cmd, capture_output=True, timeout=self.timeout, text=True)
            except (OSError, subprocess.TimeoutExpired) as e:
                raise AggregationFailed(f"ffmpeg could not run: {e}") from e
            if result.returncode != 0:
                raise AggregationFailed(
                    f"ffmpeg exited with code {result.returncode}: {result.stderr.strip()[-500:]}"
                )
        finally:
            manifest_path.unlink(missing_ok=True)

    def _concat_bytes(self, chunk_paths: list[Path], output_path: Path) -> None:
        # Degraded path: only the first chunk is guaranteed to carry a header.
        try:
            with open(output_path, "wb") as out:
                for path in chunk_paths:
                    with open(path, "rb") as src:
                        shutil.copyfileobj(src, out)
        except OSError as e:
            raise AggregationFailed(f"Raw concatenation failed: {e}") from e


def probe_duration_sec(audio_path: Path) -> int | None:
    try:
        audio = AudioSegment.from_file(str(audio_path))
    except Exception as e:
        logger.warning("Could not decode %s to measure duration: %s", audio_path, e)
        return None
    return round(len(audio) / 1000)
