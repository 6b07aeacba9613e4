"""Single-flight FIFO queue that hands chunks to the transport."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque

from .ledger import LedgerIOError, ProgressLedger
from .telegram import Transport, TransportError, VideoMetadata


@dataclass(slots=True)
class UploadItem:
    """A chunk waiting for delivery and the future its producer awaits."""

    file_path: Path
    route_id: str
    camera: str
    range_end: float
    metadata: VideoMetadata
    future: asyncio.Future
    enqueued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, object]:
        try:
            size_bytes: int | None = self.file_path.stat().st_size
        except OSError:
            size_bytes = None
        return {
            "file_name": self.file_path.name,
            "size_bytes": size_bytes,
            "route_id": self.route_id,
            "camera": self.camera,
            "range_end": self.range_end,
            "enqueued_at": self.enqueued_at,
        }


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    """Outcome handed back to the producer of a delivered chunk."""

    file_name: str
    route_id: str
    camera: str
    range_end: float
    uploaded_until: float
    response: Any = None


def _fail(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class UploadQueue:
    """Deliver queued chunks strictly one at a time in submission order.

    After the transport confirms a chunk the ledger is advanced to the chunk
    end, the file is removed and the producer's future resolves. A transport
    failure leaves the file on disk and the ledger untouched, so the range is
    produced and sent again on a later pass.
    """

    def __init__(
        self,
        transport: Transport,
        ledger: ProgressLedger,
        chat_id: str,
        *,
        idle_interval: float = 1.0,
        ledger_retries: int = 3,
        ledger_retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        if idle_interval <= 0:
            raise ValueError("idle_interval must be positive")
        if ledger_retries < 0:
            raise ValueError("ledger_retries must not be negative")
        self._transport = transport
        self._ledger = ledger
        self._chat_id = str(chat_id)
        self._idle_interval = float(idle_interval)
        self._ledger_retries = int(ledger_retries)
        self._ledger_retry_delay = max(0.0, float(ledger_retry_delay))
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)
        self._items: Deque[UploadItem] = deque()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._wake_event: asyncio.Event | None = None
        self._in_flight = 0
        self._max_in_flight = 0
        self._delivered = 0
        self._failed = 0

    # ------------------------------ producer side ------------------------------
    def enqueue(
        self,
        file_path: Path,
        *,
        route_id: str,
        camera: str,
        range_end: float,
        metadata: VideoMetadata,
    ) -> asyncio.Future:
        """Append a chunk and return a future resolved with an :class:`UploadReceipt`."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        item = UploadItem(
            file_path=Path(file_path),
            route_id=route_id,
            camera=camera,
            range_end=float(range_end),
            metadata=metadata,
            future=future,
        )
        self._items.append(item)
        self._logger.info("Queued %s for upload (%d pending)", item.file_path.name, len(self._items))
        if self._wake_event is not None:
            self._wake_event.set()
        return future

    def __len__(self) -> int:
        return len(self._items)

    def pending(self) -> list[dict[str, object]]:
        return [item.to_dict() for item in self._items]

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def max_in_flight(self) -> int:
        """Highest number of simultaneous deliveries observed (never above one)."""

        return self._max_in_flight

    @property
    def running(self) -> bool:
        return self._task is not None

    def stats(self) -> dict[str, object]:
        return {
            "running": self.running,
            "pending": len(self._items),
            "in_flight": self._in_flight,
            "delivered": self._delivered,
            "failed": self._failed,
        }

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        """Start the background delivery task."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        if self._items:
            self._wake_event.set()
        self._task = loop.create_task(self._run())

    async def aclose(self) -> None:
        """Stop after the current delivery and cancel whatever is still queued."""

        task = self._task
        if task is None:
            return
        assert self._stop_event is not None and self._wake_event is not None
        self._stop_event.set()
        self._wake_event.set()
        try:
            await task
        finally:
            self._task = None
            self._stop_event = None
            self._wake_event = None
            while self._items:
                item = self._items.popleft()
                if not item.future.done():
                    item.future.cancel()

    async def _run(self) -> None:
        assert self._stop_event is not None and self._wake_event is not None
        while not self._stop_event.is_set():
            if self._items:
                item = self._items[0]
                try:
                    await self._deliver(item)
                finally:
                    if self._items and self._items[0] is item:
                        self._items.popleft()
                continue
            self._wake_event.clear()
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._idle_interval)
            except asyncio.TimeoutError:
                continue

    # ------------------------------ delivery ------------------------------
    async def _deliver(self, item: UploadItem) -> None:
        if item.future.cancelled():
            self._logger.info("Skipping cancelled upload %s", item.file_path.name)
            return
        self._in_flight += 1
        self._max_in_flight = max(self._max_in_flight, self._in_flight)
        try:
            await self._send(item)
        finally:
            self._in_flight -= 1

    async def _send(self, item: UploadItem) -> None:
        name = item.file_path.name
        self._logger.info("Uploading %s", name)
        try:
            response = await self._transport.send(self._chat_id, item.file_path, item.metadata)
        except TransportError as exc:
            self._failed += 1
            self._logger.warning("Upload of %s failed: %s", name, exc)
            _fail(item.future, exc)
            return
        except Exception as exc:
            self._failed += 1
            self._logger.exception("Transport raised an unexpected exception for %s", name)
            _fail(item.future, TransportError(f"Unexpected transport failure: {exc}"))
            return

        try:
            uploaded_until = await self._advance(item)
        except LedgerIOError as exc:
            self._failed += 1
            self._logger.error("Unable to record progress for %s: %s", name, exc)
            self._discard(item.file_path)
            _fail(item.future, exc)
            return

        self._discard(item.file_path)
        self._delivered += 1
        self._logger.info(
            "Uploaded %s; %s/%s confirmed until %.1fs",
            name,
            item.route_id,
            item.camera,
            uploaded_until,
        )
        if not item.future.done():
            item.future.set_result(
                UploadReceipt(
                    file_name=name,
                    route_id=item.route_id,
                    camera=item.camera,
                    range_end=item.range_end,
                    uploaded_until=uploaded_until,
                    response=response,
                )
            )

    async def _advance(self, item: UploadItem) -> float:
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                return await loop.run_in_executor(
                    None, self._ledger.advance, item.route_id, item.camera, item.range_end
                )
            except LedgerIOError as exc:
                if attempt >= self._ledger_retries:
                    raise
                attempt += 1
                self._logger.warning(
                    "Ledger update failed for %s (attempt %d/%d): %s",
                    item.file_path.name,
                    attempt,
                    self._ledger_retries,
                    exc,
                )
                await self._sleep(self._ledger_retry_delay)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            self._logger.warning("Unable to remove uploaded chunk %s: %s", path, exc)


__all__ = ["UploadItem", "UploadQueue", "UploadReceipt"]
