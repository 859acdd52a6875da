import logging
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_model_cache = {}
_model_lock = threading.Lock()


class TranscriptionFailed(Exception):
    pass


@dataclass
class TranscriptionResult:
    text: str
    duration_ms: int
    language: str | None = None


class Transcriber:
    """Whole-file speech-to-text on top of faster-whisper.

    Blocking: callers run it in an executor, never on the event loop.
    """

    def __init__(self, model_size: str = "base", language: str = "en", task: str = "transcribe"):
        self.model_size = model_size
        self.language = language
        self.task = task
        self._model = None

    def _load_model(self):
        with _model_lock:
            if self.model_size in _model_cache:
                self._model = _model_cache[self.model_size]
                return

            from faster_whisper import WhisperModel

            # Detect best device
            device = "cpu"
            compute_type = "int8"
            try:
                import torch
                if torch.cuda.is_available():
                    device = "cuda"
                    compute_type = "float16"
            except ImportError:
                pass

            logger.info(
                "Loading Whisper model '%s' on %s (compute_type=%s)...",
                self.model_size, device, compute_type,
            )
            self._model = WhisperModel(
                self.model_size,
                device=device,
                compute_type=compute_type,
            )
            _model_cache[self.model_size] = self._model
            logger.info("Whisper model loaded")

    @property
    def is_loaded(self) -> bool:
        return self._model is not None or self.model_size in _model_cache

    def transcribe(self, audio_path: str | Path, language: str | None = None,
                   task: str | None = None) -> TranscriptionResult:
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise TranscriptionFailed(f"Audio file not found: {audio_path}")

        try:
            if self._model is None:
                self._load_model()

            logger.info("Transcribing %s...", audio_path.name)
            segments, info = self._model.transcribe(
                str(audio_path),
                language=language or self.language,
                task=task or self.task,
                beam_size=5,
                vad_filter=True,
            )
            # segments is a lazy generator; decoding errors surface here
            parts = [segment.text.strip() for segment in segments]
        except TranscriptionFailed:
            raise
        except Exception as e:
            raise TranscriptionFailed(f"Whisper transcription failed: {e}") from e

        text = " ".join(p for p in parts if p)
        logger.info("Transcription complete: %d segments, %d chars", len(parts), len(text))
        return TranscriptionResult(
            text=text,
            duration_ms=round(info.duration * 1000),
            language=info.language,
        )
