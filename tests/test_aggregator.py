import subprocess
from pathlib import Path

import pytest

from processing.aggregator import AggregationFailed, AudioAggregator, NoChunksToAggregate

from conftest import WEBM_HEADER


def _chunks(tmp_path: Path, *payloads: bytes) -> list[Path]:
    paths = []
    for index, payload in enumerate(payloads):
        path = tmp_path / f"{index}.webm"
        path.write_bytes(payload)
        paths.append(path)
    return paths


def test_zero_chunks_is_rejected_without_side_effects(tmp_path: Path) -> None:
    output = tmp_path / "out.webm"
    with pytest.raises(NoChunksToAggregate):
        AudioAggregator().aggregate([], output)
    assert not output.exists()
    assert list(tmp_path.iterdir()) == []


def test_single_chunk_is_copied_byte_for_byte(tmp_path: Path, monkeypatch) -> None:
    def no_ffmpeg(*args, **kwargs):
        raise AssertionError("ffmpeg must not run for a single chunk")

    monkeypatch.setattr(subprocess, "run", no_ffmpeg)
    (chunk,) = _chunks(tmp_path, WEBM_HEADER + b"payload")
    output = tmp_path / "session.webm"

    result = AudioAggregator().aggregate([chunk], output)

    assert result == output
    assert output.read_bytes() == chunk.read_bytes()


def test_multiple_chunks_go_through_concat_demuxer(tmp_path: Path, monkeypatch) -> None:
    seen = {}

    def fake_run(cmd, capture_output, timeout, text):
        manifest = Path(cmd[cmd.index("-i") + 1])
        seen["cmd"] = cmd
        seen["manifest"] = manifest
        seen["manifest_text"] = manifest.read_text(encoding="utf-8")
        Path(cmd[-1]).write_bytes(b"remuxed")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    chunks = _chunks(tmp_path, WEBM_HEADER + b"a", b"b", b"c")
    output = tmp_path / "session.webm"

    AudioAggregator(ffmpeg_path="ffmpeg-test").aggregate(chunks, output)

    cmd = seen["cmd"]
    assert cmd[0] == "ffmpeg-test"
    assert cmd[cmd.index("-f") + 1] == "concat"
    assert cmd[cmd.index("-c") + 1] == "copy"
    lines = seen["manifest_text"].splitlines()
    assert lines == [f"file '{p.resolve()}'" for p in chunks]
    assert output.read_bytes() == b"remuxed"
    # Manifest is cleaned up
    assert not seen["manifest"].exists()


def test_manifest_escapes_single_quotes(tmp_path: Path, monkeypatch) -> None:
    captured = {}

    def fake_run(cmd, capture_output, timeout, text):
        captured["text"] = Path(cmd[cmd.index("-i") + 1]).read_text(encoding="utf-8")
        Path(cmd[-1]).write_bytes(b"ok")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    odd_dir = tmp_path / "it's here"
    odd_dir.mkdir()
    chunks = _chunks(odd_dir, WEBM_HEADER, b"x")

    AudioAggregator().aggregate(chunks, tmp_path / "out.webm")

    assert "it'\\''s here" in captured["text"]


def test_ffmpeg_failure_falls_back_to_raw_concatenation(tmp_path: Path, monkeypatch) -> None:
    def failing_run(cmd, capture_output, timeout, text):
        return subprocess.CompletedProcess(cmd, 1, "", "Invalid data found")

    monkeypatch.setattr(subprocess, "run", failing_run)
    chunks = _chunks(tmp_path, WEBM_HEADER + b"a", b"b")
    output = tmp_path / "session.webm"

    AudioAggregator().aggregate(chunks, output)

    assert output.read_bytes() == WEBM_HEADER + b"ab"
    assert [p.name for p in tmp_path.iterdir() if p.suffix == ".txt"] == []


def test_missing_ffmpeg_without_fallback_raises(tmp_path: Path) -> None:
    chunks = _chunks(tmp_path, WEBM_HEADER, b"b")
    aggregator = AudioAggregator(ffmpeg_path="/nonexistent/ffmpeg", allow_binary_fallback=False)

    with pytest.raises(AggregationFailed, match="could not run"):
        aggregator.aggregate(chunks, tmp_path / "out.webm")


def test_empty_output_is_an_error(tmp_path: Path, monkeypatch) -> None:
    def silent_run(cmd, capture_output, timeout, text):
        Path(cmd[-1]).write_bytes(b"")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", silent_run)
    chunks = _chunks(tmp_path, WEBM_HEADER, b"b")

    with pytest.raises(AggregationFailed, match="empty"):
        AudioAggregator().aggregate(chunks, tmp_path / "out.webm")


def test_single_empty_chunk_is_an_error(tmp_path: Path) -> None:
    (chunk,) = _chunks(tmp_path, b"")
    with pytest.raises(AggregationFailed):
        AudioAggregator().aggregate([chunk], tmp_path / "out.webm")
