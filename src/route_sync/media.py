"""Media probing and stream-copy range extraction."""
from __future__ import annotations

import logging
import math
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import av

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """Raised when a source video cannot be inspected."""


class ExtractionError(RuntimeError):
    """Raised when a time range cannot be copied out of a source video."""


@dataclass(frozen=True, slots=True)
class MediaInfo:
    """Container level facts about a source video."""

    path: Path
    size_bytes: int
    duration_s: float
    width: int
    height: int

    @property
    def display_duration(self) -> int:
        """Duration rounded up to whole seconds for captions and metadata."""

        return int(math.ceil(self.duration_s))

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "duration_s": self.duration_s,
            "width": self.width,
            "height": self.height,
        }


def _first_video_stream(container):
    for stream in container.streams:
        if getattr(stream, "type", "") == "video":
            return stream
    return None


def _stream_duration(stream) -> float | None:
    duration = getattr(stream, "duration", None)
    time_base = getattr(stream, "time_base", None)
    if duration is None or not time_base:
        return None
    return float(duration * time_base)


def probe_media(path: Path | str) -> MediaInfo:
    """Return size, duration and frame dimensions for *path*."""

    source = Path(path)
    try:
        size_bytes = source.stat().st_size
    except OSError as exc:
        raise ProbeError(f"Unable to read {source}: {exc}") from exc

    try:
        with av.open(source.as_posix(), mode="r") as container:
            video = _first_video_stream(container)
            if video is None:
                raise ProbeError(f"{source.name} does not contain a video stream")
            duration: float | None = None
            if container.duration:
                duration = float(container.duration) / float(av.time_base)
            if not duration:
                duration = _stream_duration(video)
            context = video.codec_context
            width = int(getattr(context, "width", 0) or 0)
            height = int(getattr(context, "height", 0) or 0)
    except ProbeError:
        raise
    except (av.FFmpegError, OSError, ValueError) as exc:
        raise ProbeError(f"Unable to probe {source.name}: {exc}") from exc

    if duration is None or not math.isfinite(duration) or duration <= 0:
        raise ProbeError(f"{source.name} does not report a usable duration")
    return MediaInfo(
        path=source,
        size_bytes=int(size_bytes),
        duration_s=float(duration),
        width=width,
        height=height,
    )


class MediaExtractor(Protocol):
    """Copies ``[start, end]`` of a source into *output* without re-encoding."""

    def extract_range(self, source: Path, start: float, end: float, output: Path) -> Path:
        ...


class PyAVRangeExtractor:
    """Stream copy implemented by remuxing packets with PyAV."""

    def extract_range(self, source: Path, start: float, end: float, output: Path) -> Path:
        if end <= start:
            raise ExtractionError(f"Invalid range {start}-{end}")
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            with av.open(Path(source).as_posix(), mode="r") as input_container:
                video = _first_video_stream(input_container)
                if video is None:
                    raise ExtractionError(f"{Path(source).name} does not contain a video stream")
                selected = [
                    stream
                    for stream in input_container.streams
                    if getattr(stream, "type", "") in {"video", "audio"}
                ]
                with av.open(output.as_posix(), mode="w", format="mp4") as output_container:
                    mapping = {
                        stream.index: _add_stream_from_template(output_container, stream)
                        for stream in selected
                    }
                    if video.time_base:
                        input_container.seek(
                            int(start / video.time_base),
                            stream=video,
                            backward=True,
                            any_frame=False,
                        )
                    self._copy_packets(input_container, output_container, selected, video, mapping, end)
        except ExtractionError:
            _discard(output)
            raise
        except (av.FFmpegError, OSError, ValueError) as exc:
            _discard(output)
            raise ExtractionError(f"Unable to extract {start}-{end} from {Path(source).name}: {exc}") from exc
        return output

    @staticmethod
    def _copy_packets(input_container, output_container, selected, video, mapping, end: float) -> None:
        offset: float | None = None
        muxed = 0
        for packet in input_container.demux(selected):
            if packet.dts is None or packet.pts is None:
                continue
            time_base = packet.time_base
            packet_time = float(packet.pts * time_base)
            if packet.stream.index == video.index:
                if packet_time >= end:
                    break
                if offset is None:
                    offset = packet_time
            if offset is None:
                continue
            if packet_time >= end:
                continue
            shift = int(round(offset / time_base))
            pts = packet.pts - shift
            dts = packet.dts - shift
            if pts < 0 or dts < 0:
                continue
            packet.pts = pts
            packet.dts = dts
            packet.stream = mapping[packet.stream.index]
            output_container.mux(packet)
            muxed += 1
        if muxed == 0:
            raise ExtractionError("Requested range did not contain any packets")


def _add_stream_from_template(container, template):
    add_from_template = getattr(container, "add_stream_from_template", None)
    if add_from_template is not None:
        return add_from_template(template)
    return container.add_stream(template=template)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:  # pragma: no cover - best effort cleanup
        logger.warning("Unable to remove partial chunk %s", path)


class FfmpegRangeExtractor:
    """Stream copy implemented by invoking the ``ffmpeg`` binary."""

    def __init__(self, binary: str | None = None, *, timeout: float = 600.0) -> None:
        resolved = binary or shutil.which("ffmpeg")
        if not resolved:
            raise FileNotFoundError("ffmpeg command not found")
        self._binary = resolved
        self._timeout = timeout

    def build_command(self, source: Path, start: float, end: float, output: Path) -> list[str]:
        return [
            self._binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            f"{start:.3f}",
            "-i",
            str(source),
            "-t",
            f"{end - start:.3f}",
            "-c",
            "copy",
            "-avoid_negative_ts",
            "make_zero",
            str(output),
        ]

    def extract_range(self, source: Path, start: float, end: float, output: Path) -> Path:
        if end <= start:
            raise ExtractionError(f"Invalid range {start}-{end}")
        output.parent.mkdir(parents=True, exist_ok=True)
        command = self.build_command(source, start, end, output)
        logger.debug("Running %s", " ".join(command))
        try:
            subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            _discard(output)
            raise ExtractionError("ffmpeg timed out while extracting chunk") from exc
        except subprocess.CalledProcessError as exc:
            _discard(output)
            error_output = (exc.stderr or exc.stdout or "").strip() or str(exc)
            raise ExtractionError(error_output) from exc
        if not output.exists():
            raise ExtractionError(f"ffmpeg did not produce {output.name}")
        return output


def create_extractor(choice: str) -> MediaExtractor:
    """Return the extractor implementation registered under *choice*."""

    key = (choice or "pyav").strip().lower()
    if key == "ffmpeg":
        return FfmpegRangeExtractor()
    if key == "pyav":
        return PyAVRangeExtractor()
    raise ValueError(f"Unknown extractor: {choice}")


__all__ = [
    "ExtractionError",
    "FfmpegRangeExtractor",
    "MediaExtractor",
    "MediaInfo",
    "ProbeError",
    "PyAVRangeExtractor",
    "create_extractor",
    "probe_media",
]
