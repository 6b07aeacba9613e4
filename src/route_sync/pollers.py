"""Background loops that feed the pipeline from the fleet and the videos directory."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

from .event_log import EventLog
from .fleet import FleetClient, FleetError
from .ledger import LedgerIOError, ProgressLedger
from .naming import VIDEO_SUFFIX, InvalidFileName, RouteFile, parse_video_name
from .orchestrator import TransferError, TransferOrchestrator

logger = logging.getLogger(__name__)


def discover_sources(videos_dir: Path, ledger: ProgressLedger) -> list[RouteFile]:
    """Return the parsed, not yet processed route videos in *videos_dir*."""

    directory = Path(videos_dir)
    if not directory.exists():
        return []
    sources: list[RouteFile] = []
    for candidate in sorted(directory.iterdir()):
        if not candidate.is_file() or candidate.suffix != VIDEO_SUFFIX:
            continue
        try:
            source = parse_video_name(candidate)
        except InvalidFileName as exc:
            logger.warning("Skipping %s: %s", candidate.name, exc)
            continue
        try:
            if ledger.is_processed(source.route_id, source.camera):
                continue
        except LedgerIOError as exc:
            logger.warning("Unable to check progress for %s: %s", candidate.name, exc)
        sources.append(source)
    if sources:
        logger.info("Found %d video(s) to upload", len(sources))
    return sources


class _Supervisor:
    """Run ``poll_once`` forever with a fixed delay until stopped."""

    name = "poller"

    def __init__(self, *, interval: float, logger: logging.Logger | None = None) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def cycles(self) -> int:
        return self._cycles

    def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run())

    async def aclose(self) -> None:
        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._stop_event = None

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception:
                self._logger.exception("%s cycle raised an unexpected exception", self.name)
            self._cycles += 1
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def poll_once(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError


class UploadPoller(_Supervisor):
    """Hands every unfinished video in the videos directory to the orchestrator."""

    name = "upload poller"

    def __init__(
        self,
        videos_dir: Path,
        ledger: ProgressLedger,
        orchestrator: TransferOrchestrator,
        *,
        event_log: EventLog | None = None,
        interval: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(interval=interval, logger=logger)
        self._videos_dir = Path(videos_dir)
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._event_log = event_log

    async def poll_once(self) -> int:
        """Run one discovery cycle and return the number of files completed."""

        loop = asyncio.get_running_loop()
        sources = await loop.run_in_executor(
            None, discover_sources, self._videos_dir, self._ledger
        )
        completed = 0
        for source in sources:
            try:
                outcome = await self._orchestrator.transfer(source)
            except TransferError as exc:
                self._logger.warning("Error uploading %s: %s", source.file_name, exc.cause)
                self._record(
                    "transfer_failed",
                    f"Upload of {source.file_name} failed: {exc.cause}",
                    source,
                    {"error": type(exc.cause).__name__},
                )
                continue
            completed += 1
            self._record(
                "transfer_complete",
                f"Uploaded {source.file_name} in {outcome.chunks} chunk(s)",
                source,
                {"uploaded_until": outcome.uploaded_until, "deleted": outcome.source_deleted},
            )
        return completed

    def _record(self, event: str, message: str, source: RouteFile, details: dict) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            "upload",
            event,
            message,
            route_id=source.route_id,
            camera=source.camera,
            details=details,
        )


class DownloadPoller(_Supervisor):
    """Pulls footage for every listed route and camera not downloaded yet."""

    name = "download poller"

    def __init__(
        self,
        fleet: FleetClient,
        ledger: ProgressLedger,
        videos_dir: Path,
        cameras: Sequence[str],
        *,
        max_videos: int | None = None,
        event_log: EventLog | None = None,
        interval: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(interval=interval, logger=logger)
        self._fleet = fleet
        self._ledger = ledger
        self._videos_dir = Path(videos_dir)
        self._cameras = tuple(cameras)
        self._max_videos = max_videos
        self._event_log = event_log

    def _video_count(self) -> int:
        if not self._videos_dir.exists():
            return 0
        return sum(
            1
            for path in self._videos_dir.iterdir()
            if path.is_file() and path.suffix == VIDEO_SUFFIX
        )

    def _at_capacity(self) -> bool:
        return self._max_videos is not None and self._video_count() >= self._max_videos

    async def poll_once(self) -> int:
        """Download missing footage and return the number of files fetched."""

        try:
            routes = await self._fleet.list_routes()
        except FleetError as exc:
            self._logger.warning("Error listing routes: %s", exc)
            return 0
        loop = asyncio.get_running_loop()
        downloaded = 0
        for route_id in routes:
            for camera in self._cameras:
                if self._at_capacity():
                    self._logger.info(
                        "Videos directory holds %d or more videos; pausing downloads",
                        self._max_videos,
                    )
                    return downloaded
                try:
                    already = await loop.run_in_executor(
                        None, self._ledger.is_downloaded, route_id, camera
                    )
                except LedgerIOError as exc:
                    self._logger.warning("Unable to read ledger for %s: %s", route_id, exc)
                    return downloaded
                if already:
                    continue
                self._logger.info("Downloading %s of %s", camera, route_id)
                try:
                    path = await self._fleet.download_footage(route_id, camera, self._videos_dir)
                    await loop.run_in_executor(
                        None, self._ledger.mark_downloaded, route_id, camera
                    )
                except (FleetError, LedgerIOError) as exc:
                    self._logger.warning("Error downloading %s of %s: %s", camera, route_id, exc)
                    self._record("download_failed", str(exc), route_id, camera)
                    continue
                downloaded += 1
                self._record("download_complete", f"Downloaded {path.name}", route_id, camera)
        return downloaded

    def _record(self, event: str, message: str, route_id: str, camera: str) -> None:
        if self._event_log is None:
            return
        self._event_log.record("download", event, message, route_id=route_id, camera=camera)


__all__ = ["DownloadPoller", "UploadPoller", "discover_sources"]
