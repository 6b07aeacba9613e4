"""Tests for route video file name parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from route_sync.naming import InvalidFileName, download_file_name, parse_video_name


def test_parse_video_name_splits_route_segment_and_camera() -> None:
    parsed = parse_video_name("a2a0ccea32023010|2023-07-27--13-01-19-ecamera.mp4")

    assert parsed.route_id == "a2a0ccea32023010|2023-07-27"
    assert parsed.segment == "13-01-19"
    assert parsed.camera == "ecamera"
    assert parsed.key == ("a2a0ccea32023010|2023-07-27", "ecamera")


def test_parse_video_name_uses_last_double_hyphen_for_route() -> None:
    parsed = parse_video_name("route--one--seg-dcamera.mp4")

    assert parsed.route_id == "route--one"
    assert parsed.segment == "seg"
    assert parsed.camera == "dcamera"


def test_parse_video_name_accepts_paths(tmp_path: Path) -> None:
    path = tmp_path / "abc--0-qcamera.mp4"

    parsed = parse_video_name(path)

    assert parsed.path == path
    assert parsed.file_name == "abc--0-qcamera.mp4"


@pytest.mark.parametrize(
    "name",
    [
        "no-separator-ecamera.mp4",
        "route--segment.mp4",
        "route--segment-ecamera.mkv",
        "route--segment-ecamera.mp4.tmp",
        "--segment-ecamera.mp4",
    ],
)
def test_parse_video_name_rejects_invalid_names(name: str) -> None:
    with pytest.raises(InvalidFileName) as excinfo:
        parse_video_name(name)

    assert excinfo.value.file_name == name
    assert isinstance(excinfo.value, ValueError)


def test_download_file_name_round_trips_through_parser() -> None:
    name = download_file_name("dongle|2024-01-02--10-11-12", "ecamera")

    parsed = parse_video_name(name)

    assert name == "dongle|2024-01-02--10-11-12-ecamera.mp4"
    assert parsed.camera == "ecamera"
    assert parsed.route_id == "dongle|2024-01-02"
    assert parsed.fleet_route_id == "dongle|2024-01-02--10-11-12"
