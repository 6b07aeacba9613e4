"""Tests for the adaptive chunk planner."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from route_sync.chunking import (
    ChunkPlanner,
    ChunkRange,
    ChunkTooLargeError,
    chunk_file_name,
)
from route_sync.media import MediaInfo
from route_sync.naming import parse_video_name


class _StubExtractor:
    """Writes a file whose size is derived from the requested range."""

    def __init__(self, size_for: Callable[[float, float], int]) -> None:
        self._size_for = size_for
        self.calls: list[tuple[float, float]] = []

    def extract_range(self, source: Path, start: float, end: float, output: Path) -> Path:
        self.calls.append((start, end))
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"\0" * self._size_for(start, end))
        return output


def _source(tmp_path: Path):
    path = tmp_path / "videos" / "route--0-ecamera.mp4"
    return parse_video_name(path)


def _media(source, duration: float) -> MediaInfo:
    return MediaInfo(path=source.path, size_bytes=0, duration_s=duration, width=1928, height=1208)


def test_plan_splits_into_nominal_windows(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: 10)
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    chunks = list(planner.iter_chunks(source, _media(source, 3700.0), cap_bytes=1_000_000))

    assert [(chunk.start, chunk.end) for chunk in chunks] == [
        (0.0, 1800.0),
        (1800.0, 3600.0),
        (3600.0, 3700.0),
    ]
    assert all(chunk.attempts == 1 for chunk in chunks)
    assert chunks[1].path.name == chunk_file_name("route", "ecamera", 1800.0)


def test_plan_resumes_from_offset(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: 10)
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    chunks = list(
        planner.iter_chunks(source, _media(source, 3700.0), cap_bytes=1_000, resume_from=1800.0)
    )

    assert [(chunk.start, chunk.end) for chunk in chunks] == [(1800.0, 3600.0), (3600.0, 3700.0)]


@pytest.mark.parametrize("resume_from", [3700.0, 3699.0, 4000.0])
def test_plan_is_empty_when_progress_covers_duration(tmp_path: Path, resume_from: float) -> None:
    extractor = _StubExtractor(lambda start, end: 10)
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    chunks = list(
        planner.iter_chunks(source, _media(source, 3700.0), cap_bytes=1_000, resume_from=resume_from)
    )

    assert chunks == []
    assert extractor.calls == []


def test_tiny_tail_inside_epsilon_is_not_produced(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: 10)
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    chunks = list(planner.iter_chunks(source, _media(source, 1801.5), cap_bytes=1_000))

    assert [(chunk.start, chunk.end) for chunk in chunks] == [(0.0, 1800.0)]


def test_oversized_chunk_shrinks_until_under_cap(tmp_path: Path) -> None:
    # 60 units for a full window against a cap of 50.
    extractor = _StubExtractor(lambda start, end: int((end - start) / 1800.0 * 60_000))
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    chunks = planner.iter_chunks(source, _media(source, 3600.0), cap_bytes=50_000)
    first = next(chunks)

    assert extractor.calls[:4] == [(0.0, 1800.0), (0.0, 1680.0), (0.0, 1560.0), (0.0, 1440.0)]
    assert (first.start, first.end) == (0.0, 1440.0)
    assert first.attempts == 4
    assert first.size_bytes <= 50_000
    assert first.path.exists()
    remaining = list(chunks)
    assert remaining[0].start == 1440.0
    assert remaining[-1].end == 3600.0


def test_irreducible_chunk_raises_after_bounded_attempts(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: 60_000)
    planner = ChunkPlanner(extractor, tmp_path / "tmp")
    source = _source(tmp_path)

    with pytest.raises(ChunkTooLargeError) as excinfo:
        list(planner.iter_chunks(source, _media(source, 3600.0), cap_bytes=50_000))

    ends = [end for _, end in extractor.calls]
    assert ends == [1800.0 - 120.0 * step for step in range(15)]
    assert all(later < earlier for earlier, later in zip(ends, ends[1:]))
    assert excinfo.value.size_bytes == 60_000
    assert excinfo.value.cap_bytes == 50_000
    assert list((tmp_path / "tmp").iterdir()) == []


def test_ranges_cover_resume_point_to_duration_without_gaps(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: int((end - start) * 30))
    planner = ChunkPlanner(extractor, tmp_path / "tmp", window_s=600.0, shrink_step_s=45.0)
    source = _source(tmp_path)

    chunks = list(
        planner.iter_chunks(source, _media(source, 5000.0), cap_bytes=15_000, resume_from=250.0)
    )

    assert chunks[0].start == 250.0
    assert chunks[-1].end == 5000.0
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start == previous.end
    assert all(chunk.size_bytes <= 15_000 for chunk in chunks)


def test_chunk_range_rejects_empty_ranges() -> None:
    with pytest.raises(ValueError):
        ChunkRange(10.0, 10.0)
    with pytest.raises(ValueError):
        ChunkRange(-1.0, 10.0)


def test_planner_validates_policy(tmp_path: Path) -> None:
    extractor = _StubExtractor(lambda start, end: 1)
    with pytest.raises(ValueError):
        ChunkPlanner(extractor, tmp_path, window_s=0)
    with pytest.raises(ValueError):
        ChunkPlanner(extractor, tmp_path, shrink_step_s=-5)
