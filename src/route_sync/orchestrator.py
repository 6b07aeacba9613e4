"""Per-file transfer pipeline: probe, resume, chunk, guard, enqueue, await."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from .chunking import Chunk, ChunkPlanner
from .ledger import LedgerIOError, ProgressLedger
from .media import MediaInfo, probe_media
from .naming import RouteFile
from .storage import await_capacity
from .telegram import VideoMetadata
from .upload_queue import UploadQueue

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    START = "start"
    PROBE = "probe"
    ALREADY_COMPLETE = "already_complete"
    PLAN = "plan"
    PRODUCE_CHUNK = "produce_chunk"
    GUARD_CHECK = "guard_check"
    ENQUEUE = "enqueue"
    AWAIT_COMPLETION = "await_completion"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True)
class TransferOutcome:
    """What happened to one source file."""

    source: RouteFile
    states: list[TransferState] = field(default_factory=list)
    resumed_from: float = 0.0
    uploaded_until: float = 0.0
    chunks: int = 0
    source_deleted: bool = False

    @property
    def state(self) -> TransferState:
        return self.states[-1] if self.states else TransferState.START

    def to_dict(self) -> dict[str, object]:
        return {
            "file_name": self.source.file_name,
            "route_id": self.source.route_id,
            "camera": self.source.camera,
            "state": self.state.value,
            "resumed_from": self.resumed_from,
            "uploaded_until": self.uploaded_until,
            "chunks": self.chunks,
            "source_deleted": self.source_deleted,
        }


class TransferError(RuntimeError):
    """Raised when one file cannot be transferred; wraps the underlying cause."""

    def __init__(self, outcome: TransferOutcome, cause: BaseException) -> None:
        super().__init__(f"Transfer of {outcome.source.file_name} failed: {cause}")
        self.outcome = outcome
        self.cause = cause


def format_clock(seconds: float) -> str:
    """Format *seconds* as ``H:MM:SS``."""

    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def build_caption(source: RouteFile, recorded_at: datetime, start: float, end: float) -> str:
    return (
        f"\N{AUTOMOBILE} Route: {recorded_at:%Y-%m-%d %H:%M:%S}\n"
        f"\N{CAMERA} Camera: {source.camera} ({source.route_id})\n"
        f"\N{WATCH} Time: {format_clock(start)} - {format_clock(end)}"
    )


def _recorded_at(path: Path) -> datetime:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime)
    except OSError:
        return datetime.now()


class TransferOrchestrator:
    """Drive one source video from its resume point to full coverage.

    Chunks are produced lazily and one at a time: the next range is only
    extracted once the previous chunk has been confirmed by the upload queue,
    so each file keeps at most one chunk in the scratch directory. The
    scratch budget is checked after a chunk is produced and before it is
    queued, with that chunk's own size left out of the count.
    """

    def __init__(
        self,
        ledger: ProgressLedger,
        planner: ChunkPlanner,
        queue: UploadQueue,
        *,
        cap_bytes: int,
        scratch_dir: Path,
        max_scratch_bytes: int | None = None,
        guard_poll_interval: float = 5.0,
        guard_timeout: float | None = None,
        delete_uploaded: bool = False,
        ledger_retries: int = 3,
        ledger_retry_delay: float = 1.0,
        prober: Callable[[Path], MediaInfo] = probe_media,
        guard: Callable[..., Awaitable[int]] = await_capacity,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if cap_bytes <= 0:
            raise ValueError("cap_bytes must be positive")
        self._ledger = ledger
        self._planner = planner
        self._queue = queue
        self._cap_bytes = int(cap_bytes)
        self._scratch_dir = Path(scratch_dir)
        self._max_scratch_bytes = max_scratch_bytes
        self._guard_poll_interval = guard_poll_interval
        self._guard_timeout = guard_timeout
        self._delete_uploaded = delete_uploaded
        self._ledger_retries = max(0, int(ledger_retries))
        self._ledger_retry_delay = ledger_retry_delay
        self._prober = prober
        self._guard = guard
        self._sleep = sleep

    async def transfer(self, source: RouteFile) -> TransferOutcome:
        """Upload whatever part of *source* the ledger does not cover yet.

        Any failure is re-raised as :class:`TransferError` with the outcome
        ending in ``ERROR``; the ledger keeps the last confirmed offset so the
        next call resumes from there.
        """

        outcome = TransferOutcome(source=source, states=[TransferState.START])
        try:
            await self._run(source, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            outcome.states.append(TransferState.ERROR)
            raise TransferError(outcome, exc) from exc
        return outcome

    async def _run(self, source: RouteFile, outcome: TransferOutcome) -> None:
        loop = asyncio.get_running_loop()

        outcome.states.append(TransferState.PROBE)
        media = await loop.run_in_executor(None, self._prober, source.path)
        logger.info(
            "Probed %s: %.1fs, %d bytes, %dx%d",
            source.file_name,
            media.duration_s,
            media.size_bytes,
            media.width,
            media.height,
        )

        resume_from = await self._resume_point(source)
        outcome.resumed_from = resume_from
        outcome.uploaded_until = resume_from
        if self._planner.is_complete(resume_from, media.duration_s):
            outcome.states.append(TransferState.ALREADY_COMPLETE)
            logger.info("%s already uploaded until %.1fs", source.file_name, resume_from)
            await self._finish(source, outcome)
            return

        outcome.states.append(TransferState.PLAN)
        recorded_at = _recorded_at(source.path)
        chunks = self._planner.iter_chunks(source, media, self._cap_bytes, resume_from)
        try:
            while True:
                outcome.states.append(TransferState.PRODUCE_CHUNK)
                chunk = await loop.run_in_executor(None, next, chunks, None)
                if chunk is None:
                    break

                outcome.states.append(TransferState.GUARD_CHECK)
                await self._await_scratch_budget(chunk)

                outcome.states.append(TransferState.ENQUEUE)
                metadata = VideoMetadata(
                    caption=build_caption(source, recorded_at, chunk.start, chunk.end),
                    width=media.width,
                    height=media.height,
                    duration_s=media.display_duration,
                    file_name=source.file_name,
                )
                future = self._queue.enqueue(
                    chunk.path,
                    route_id=source.route_id,
                    camera=source.camera,
                    range_end=chunk.end,
                    metadata=metadata,
                )

                outcome.states.append(TransferState.AWAIT_COMPLETION)
                receipt = await future
                outcome.chunks += 1
                outcome.uploaded_until = receipt.uploaded_until
        finally:
            if not chunks.gi_running:
                chunks.close()

        outcome.states.append(TransferState.DONE)
        logger.info(
            "Finished %s: %d chunk(s), uploaded until %.1fs",
            source.file_name,
            outcome.chunks,
            outcome.uploaded_until,
        )
        await self._finish(source, outcome)

    async def _await_scratch_budget(self, chunk: Chunk) -> None:
        if self._max_scratch_bytes is None:
            return
        try:
            await self._guard(
                self._scratch_dir,
                self._max_scratch_bytes + chunk.size_bytes,
                poll_interval=self._guard_poll_interval,
                timeout=self._guard_timeout,
            )
        except Exception:
            chunk.path.unlink(missing_ok=True)
            raise

    async def _resume_point(self, source: RouteFile) -> float:
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                return await loop.run_in_executor(
                    None, self._ledger.read, source.route_id, source.camera
                )
            except LedgerIOError as exc:
                if attempt >= self._ledger_retries:
                    logger.warning(
                        "Unable to read progress for %s, starting from 0: %s",
                        source.file_name,
                        exc,
                    )
                    return 0.0
                attempt += 1
                logger.warning(
                    "Ledger read failed for %s (attempt %d/%d): %s",
                    source.file_name,
                    attempt,
                    self._ledger_retries,
                    exc,
                )
                await self._sleep(self._ledger_retry_delay)

    async def _finish(self, source: RouteFile, outcome: TransferOutcome) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, self._ledger.mark_processed, source.route_id, source.camera
            )
        except LedgerIOError as exc:
            logger.warning("Unable to mark %s as processed: %s", source.file_name, exc)
        if not self._delete_uploaded:
            return
        try:
            source.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Unable to delete uploaded video %s: %s", source.path, exc)
            return
        outcome.source_deleted = True
        logger.info("Deleted uploaded video %s", source.file_name)


__all__ = [
    "TransferError",
    "TransferOrchestrator",
    "TransferOutcome",
    "TransferState",
    "build_caption",
    "format_clock",
]
