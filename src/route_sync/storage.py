"""Filesystem helpers: directory bootstrap, startup cleanup and scratch budget."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

PARTIAL_DOWNLOAD_SUFFIX = ".tmp"


class ScratchBudgetTimeout(RuntimeError):
    """Raised when the scratch directory stays over budget for too long."""

    def __init__(self, path: Path, used_bytes: int, max_bytes: int, waited_s: float) -> None:
        super().__init__(
            f"Scratch directory {path} still holds {used_bytes} bytes "
            f"(budget {max_bytes}) after waiting {waited_s:.0f}s"
        )
        self.path = path
        self.used_bytes = used_bytes
        self.max_bytes = max_bytes


def ensure_directories(paths: Iterable[Path]) -> list[Path]:
    """Create every directory in *paths* that does not exist yet."""

    created: list[Path] = []
    for path in paths:
        directory = Path(path)
        if directory.exists():
            continue
        logger.info("Path does not exist, creating %s", directory)
        directory.mkdir(parents=True, exist_ok=True)
        created.append(directory)
    return created


def _remove_files(directory: Path, predicate: Callable[[Path], bool]) -> list[str]:
    removed: list[str] = []
    if not directory.exists():
        return removed
    for candidate in sorted(directory.iterdir()):
        if not candidate.is_file() or not predicate(candidate):
            continue
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", candidate, exc)
            continue
        logger.info("Removed file %s", candidate.name)
        removed.append(candidate.name)
    return removed


def clean_scratch_files(scratch_dir: Path) -> list[str]:
    """Remove every file left in the scratch directory.

    Chunks still on disk at startup were never confirmed by the transport,
    so the ledger does not reflect them and they are safe to drop.
    """

    logger.info("Cleaning up scratch files in %s", scratch_dir)
    return _remove_files(Path(scratch_dir), lambda path: True)


def clean_partial_downloads(videos_dir: Path) -> list[str]:
    """Remove interrupted downloads (``*.tmp``) from the videos directory."""

    logger.info("Cleaning up partial downloads in %s", videos_dir)
    return _remove_files(
        Path(videos_dir), lambda path: path.name.endswith(PARTIAL_DOWNLOAD_SUFFIX)
    )


def directory_size(path: Path) -> int:
    """Return the total size in bytes of the files below *path*."""

    root = Path(path)
    if not root.exists():
        return 0
    total = 0
    for candidate in root.rglob("*"):
        try:
            if candidate.is_file():
                total += candidate.stat().st_size
        except OSError:
            continue
    return total


async def await_capacity(
    path: Path,
    max_bytes: int | None,
    *,
    poll_interval: float = 5.0,
    timeout: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Wait until the files under *path* total less than *max_bytes*.

    Returns the last measured size. A ``None`` budget returns immediately.
    """

    if max_bytes is None:
        return 0
    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")
    loop = asyncio.get_running_loop()
    waited = 0.0
    logged = False
    while True:
        used = await loop.run_in_executor(None, directory_size, path)
        if used < max_bytes:
            if logged:
                logger.info("Scratch directory back under budget (%d < %d bytes)", used, max_bytes)
            return used
        if timeout is not None and waited >= timeout:
            raise ScratchBudgetTimeout(Path(path), used, max_bytes, waited)
        if not logged:
            logger.info(
                "Scratch directory over budget (%d >= %d bytes); waiting for uploads",
                used,
                max_bytes,
            )
            logged = True
        await sleep(poll_interval)
        waited += poll_interval


__all__ = [
    "PARTIAL_DOWNLOAD_SUFFIX",
    "ScratchBudgetTimeout",
    "await_capacity",
    "clean_partial_downloads",
    "clean_scratch_files",
    "directory_size",
    "ensure_directories",
]
