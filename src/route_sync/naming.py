"""Parsing helpers for route video file names."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

VIDEO_SUFFIX = ".mp4"

# The camera is the last hyphen-free token; the route id is everything before the last "--".
_VIDEO_NAME_RE = re.compile(r"^(?P<route_id>.+)--(?P<segment>.+)-(?P<camera>[^-/]+)\.mp4$")


class InvalidFileName(ValueError):
    """Raised when a file name does not follow ``<route>--<segment>-<camera>.mp4``."""

    def __init__(self, file_name: str) -> None:
        super().__init__(f"Invalid route video file name: {file_name!r}")
        self.file_name = file_name


@dataclass(frozen=True, slots=True)
class RouteFile:
    """A route video on disk identified by its route and camera."""

    path: Path
    route_id: str
    segment: str
    camera: str

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def key(self) -> tuple[str, str]:
        return (self.route_id, self.camera)

    @property
    def fleet_route_id(self) -> str:
        """The fleet id this file was downloaded under; inverts :func:`download_file_name`."""

        return f"{self.route_id}--{self.segment}"


def parse_video_name(name: str | Path) -> RouteFile:
    """Return the :class:`RouteFile` described by *name*.

    *name* may be a bare file name or a path; only the final component is
    parsed.
    """

    path = Path(name)
    match = _VIDEO_NAME_RE.match(path.name)
    if match is None:
        raise InvalidFileName(path.name)
    route_id = match.group("route_id").strip()
    segment = match.group("segment").strip()
    camera = match.group("camera").strip()
    if not route_id or not segment or not camera:
        raise InvalidFileName(path.name)
    return RouteFile(path=path, route_id=route_id, segment=segment, camera=camera)


def download_file_name(route_id: str, camera: str) -> str:
    """Return the file name used for a downloaded camera video."""

    return f"{route_id}-{camera}{VIDEO_SUFFIX}"


__all__ = [
    "InvalidFileName",
    "RouteFile",
    "VIDEO_SUFFIX",
    "download_file_name",
    "parse_video_name",
]
