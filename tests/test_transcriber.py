from types import SimpleNamespace

import pytest

from processing.transcriber import TranscriptionFailed, Transcriber


class FakeWhisperModel:
    def __init__(self, texts=(" Hello there. ", "General Kenobi."), fail_midway=False):
        self.texts = texts
        self.fail_midway = fail_midway
        self.kwargs = None

    def transcribe(self, path, **kwargs):
        self.kwargs = kwargs

        def segments():
            for text in self.texts:
                yield SimpleNamespace(text=text)
            if self.fail_midway:
                raise RuntimeError("Invalid data found when processing input")

        return segments(), SimpleNamespace(duration=12.345, language="en")


def test_transcribe_joins_segments(tmp_path) -> None:
    audio = tmp_path / "session.webm"
    audio.write_bytes(b"audio")
    transcriber = Transcriber(language="en")
    model = FakeWhisperModel()
    transcriber._model = model

    result = transcriber.transcribe(audio, task="translate")

    assert result.text == "Hello there. General Kenobi."
    assert result.duration_ms == 12345
    assert result.language == "en"
    assert model.kwargs["language"] == "en"
    assert model.kwargs["task"] == "translate"


def test_decode_error_raises_transcription_failed(tmp_path) -> None:
    audio = tmp_path / "session.webm"
    audio.write_bytes(b"audio")
    transcriber = Transcriber()
    transcriber._model = FakeWhisperModel(fail_midway=True)

    with pytest.raises(TranscriptionFailed, match="Invalid data"):
        transcriber.transcribe(audio)


def test_missing_file_raises_transcription_failed(tmp_path) -> None:
    transcriber = Transcriber()
    transcriber._model = FakeWhisperModel()
    with pytest.raises(TranscriptionFailed, match="not found"):
        transcriber.transcribe(tmp_path / "nope.webm")
