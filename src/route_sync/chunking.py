"""Adaptive splitting of route videos into size-bounded chunks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .media import MediaExtractor, MediaInfo
from .naming import RouteFile

logger = logging.getLogger(__name__)

NOMINAL_WINDOW_S = 30 * 60.0
SHRINK_STEP_S = 120.0
END_EPSILON_S = 2.0


class ChunkError(RuntimeError):
    """Base error raised while planning chunks for a source video."""


class ChunkTooLargeError(ChunkError):
    """Raised when a range stays above the byte cap after every shrink step."""

    def __init__(self, start: float, end: float, size_bytes: int, cap_bytes: int) -> None:
        super().__init__(
            f"Chunk starting at {start:.1f}s is {size_bytes} bytes at {end - start:.1f}s "
            f"and cannot be shrunk below the {cap_bytes} byte cap"
        )
        self.start = start
        self.end = end
        self.size_bytes = size_bytes
        self.cap_bytes = cap_bytes


@dataclass(frozen=True, slots=True)
class ChunkRange:
    """Half-open time range ``[start, end)`` in seconds."""

    start: float
    end: float

    def __post_init__(self) -> None:
        if self.start < 0 or self.end <= self.start:
            raise ValueError("Chunk ranges require 0 <= start < end")

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class Chunk:
    """A stream-copied extract waiting to be uploaded."""

    path: Path
    range: ChunkRange
    size_bytes: int
    attempts: int = 1

    @property
    def start(self) -> float:
        return self.range.start

    @property
    def end(self) -> float:
        return self.range.end


def format_offset(seconds: float) -> str:
    text = f"{float(seconds):.3f}".rstrip("0").rstrip(".")
    return text or "0"


def chunk_file_name(route_id: str, camera: str, start: float) -> str:
    """Return the scratch file name used for the chunk starting at *start*."""

    return f"{route_id}-{camera}--{format_offset(start)}.mp4"


class ChunkPlanner:
    """Produce chunks covering ``[resume_from, duration]`` one at a time.

    Each range starts ``window_s`` wide (clipped to the duration). When the
    stream-copied output is larger than the cap the range end is pulled in by
    ``shrink_step_s`` and the extract is retried from the same start. Ranges
    that cannot shrink any further raise :class:`ChunkTooLargeError`.
    """

    def __init__(
        self,
        extractor: MediaExtractor,
        scratch_dir: Path,
        *,
        window_s: float = NOMINAL_WINDOW_S,
        shrink_step_s: float = SHRINK_STEP_S,
        end_epsilon_s: float = END_EPSILON_S,
    ) -> None:
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        if shrink_step_s <= 0:
            raise ValueError("shrink_step_s must be positive")
        if end_epsilon_s < 0:
            raise ValueError("end_epsilon_s must not be negative")
        self._extractor = extractor
        self._scratch_dir = Path(scratch_dir)
        self._window = float(window_s)
        self._shrink_step = float(shrink_step_s)
        self._epsilon = float(end_epsilon_s)

    @property
    def end_epsilon_s(self) -> float:
        return self._epsilon

    def is_complete(self, progress: float, duration: float) -> bool:
        """Return True when *progress* already covers *duration*."""

        return progress >= duration - self._epsilon

    def iter_chunks(
        self,
        source: RouteFile,
        media: MediaInfo,
        cap_bytes: int,
        resume_from: float = 0.0,
    ) -> Iterator[Chunk]:
        if cap_bytes <= 0:
            raise ValueError("cap_bytes must be positive")
        duration = float(media.duration_s)
        start = max(0.0, float(resume_from))
        while not self.is_complete(start, duration):
            end = min(start + self._window, duration)
            if end <= start:
                break
            chunk = self._produce(source, start, end, cap_bytes)
            yield chunk
            if self.is_complete(chunk.end, duration):
                return
            start = chunk.end

    def _produce(self, source: RouteFile, start: float, end: float, cap_bytes: int) -> Chunk:
        output = self._scratch_dir / chunk_file_name(source.route_id, source.camera, start)
        attempts = 0
        while True:
            attempts += 1
            logger.debug(
                "Creating chunk for %s: %.1f-%.1f (attempt %d)",
                source.file_name,
                start,
                end,
                attempts,
            )
            self._extractor.extract_range(source.path, start, end, output)
            size_bytes = output.stat().st_size
            if size_bytes <= cap_bytes:
                logger.info(
                    "Chunk created for %s: %.1f-%.1f (%d bytes)",
                    source.file_name,
                    start,
                    end,
                    size_bytes,
                )
                return Chunk(
                    path=output,
                    range=ChunkRange(start, end),
                    size_bytes=int(size_bytes),
                    attempts=attempts,
                )
            output.unlink(missing_ok=True)
            shrunk = end - self._shrink_step
            if shrunk <= start:
                raise ChunkTooLargeError(start, end, int(size_bytes), cap_bytes)
            logger.info(
                "Chunk too big for %s (%d bytes > %d); shrinking end %.1f -> %.1f",
                source.file_name,
                size_bytes,
                cap_bytes,
                end,
                shrunk,
            )
            end = shrunk


__all__ = [
    "Chunk",
    "ChunkError",
    "ChunkPlanner",
    "ChunkRange",
    "ChunkTooLargeError",
    "END_EPSILON_S",
    "NOMINAL_WINDOW_S",
    "SHRINK_STEP_S",
    "chunk_file_name",
    "format_offset",
]
