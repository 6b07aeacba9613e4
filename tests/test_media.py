"""Tests for media probing and range extraction."""

from __future__ import annotations

import subprocess
from fractions import Fraction
from pathlib import Path

import pytest

av = pytest.importorskip("av")

from route_sync import media as media_module
from route_sync.media import (
    ExtractionError,
    FfmpegRangeExtractor,
    ProbeError,
    PyAVRangeExtractor,
    create_extractor,
    probe_media,
)


def _write_clip(path: Path, *, seconds: int = 4, fps: int = 10) -> Path:
    try:
        with av.open(path.as_posix(), mode="w") as container:
            stream = container.add_stream("mpeg4", rate=fps)
            stream.width = 64
            stream.height = 48
            stream.pix_fmt = "yuv420p"
            stream.codec_context.gop_size = fps
            for index in range(seconds * fps):
                frame = av.VideoFrame(64, 48, "yuv420p")
                frame.pts = index
                frame.time_base = Fraction(1, fps)
                for packet in stream.encode(frame):
                    container.mux(packet)
            for packet in stream.encode():
                container.mux(packet)
    except av.FFmpegError as exc:  # pragma: no cover - depends on the bundled codecs
        pytest.skip(f"Unable to encode a test clip: {exc}")
    return path


def test_probe_media_reports_duration_and_dimensions(tmp_path: Path) -> None:
    clip = _write_clip(tmp_path / "route--0-ecamera.mp4")

    info = probe_media(clip)

    assert info.width == 64
    assert info.height == 48
    assert info.size_bytes == clip.stat().st_size
    assert info.duration_s == pytest.approx(4.0, abs=0.5)
    assert info.display_duration >= 4


def test_probe_media_rejects_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(ProbeError):
        probe_media(tmp_path / "missing.mp4")

    garbage = tmp_path / "garbage.mp4"
    garbage.write_bytes(b"definitely not a video")
    with pytest.raises(ProbeError):
        probe_media(garbage)


def test_pyav_extractor_copies_a_time_range(tmp_path: Path) -> None:
    clip = _write_clip(tmp_path / "route--0-ecamera.mp4")
    output = tmp_path / "tmp" / "route-ecamera--1.mp4"

    result = PyAVRangeExtractor().extract_range(clip, 1.0, 3.0, output)

    assert result == output
    info = probe_media(output)
    assert 1.0 <= info.duration_s <= 3.0
    assert output.stat().st_size < clip.stat().st_size


def test_pyav_extractor_rejects_inverted_ranges(tmp_path: Path) -> None:
    with pytest.raises(ExtractionError):
        PyAVRangeExtractor().extract_range(tmp_path / "a.mp4", 5.0, 5.0, tmp_path / "out.mp4")


def test_ffmpeg_command_uses_stream_copy(tmp_path: Path) -> None:
    extractor = FfmpegRangeExtractor("/usr/bin/ffmpeg")

    command = extractor.build_command(tmp_path / "in.mp4", 1800.0, 3600.0, tmp_path / "out.mp4")

    assert command[0] == "/usr/bin/ffmpeg"
    assert command[command.index("-ss") + 1] == "1800.000"
    assert command[command.index("-t") + 1] == "1800.000"
    assert command[command.index("-c") + 1] == "copy"
    assert command.index("-ss") < command.index("-i")
    assert command[-1] == str(tmp_path / "out.mp4")


def test_ffmpeg_failure_removes_partial_output(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    output = tmp_path / "out.mp4"

    def fake_run(command, **kwargs):
        output.write_bytes(b"partial")
        raise subprocess.CalledProcessError(1, command, stderr="Invalid data found")

    monkeypatch.setattr(media_module.subprocess, "run", fake_run)

    with pytest.raises(ExtractionError, match="Invalid data found"):
        FfmpegRangeExtractor("ffmpeg").extract_range(tmp_path / "in.mp4", 0.0, 10.0, output)
    assert not output.exists()


def test_create_extractor_choices(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(media_module.shutil, "which", lambda name: "/opt/ffmpeg")

    assert isinstance(create_extractor("pyav"), PyAVRangeExtractor)
    assert isinstance(create_extractor("FFmpeg"), FfmpegRangeExtractor)
    with pytest.raises(ValueError):
        create_extractor("vlc")
