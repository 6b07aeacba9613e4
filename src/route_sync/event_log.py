"""Persistent trail of pipeline events shown on the operator surface."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Mapping

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventLogEntry:
    """One recorded pipeline event."""

    timestamp: float
    source: str
    event: str
    message: str
    route_id: str | None = None
    camera: str | None = None
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "source": self.source,
            "event": self.event,
            "message": self.message,
        }
        if self.route_id:
            payload["route_id"] = self.route_id
        if self.camera:
            payload["camera"] = self.camera
        if self.details:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, Mapping):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        source = payload.get("source")
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        details = payload.get("details")
        route_id = payload.get("route_id")
        camera = payload.get("camera")
        return cls(
            timestamp=timestamp,
            source=source if isinstance(source, str) and source else "pipeline",
            event=event,
            message=message,
            route_id=route_id if isinstance(route_id, str) else None,
            camera=camera if isinstance(camera, str) else None,
            details=dict(details) if isinstance(details, Mapping) else None,
        )


class EventLog:
    """Bounded in-memory event list mirrored to a JSON lines file.

    The file is rewritten with only the retained entries once it holds twice
    ``max_entries`` lines so it cannot grow without bound.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._lines_on_disk = 0
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        source: str,
        event: str,
        message: str,
        *,
        route_id: str | None = None,
        camera: str | None = None,
        details: Mapping[str, object | None] | None = None,
    ) -> EventLogEntry:
        """Append an event and return the stored entry."""

        cleaned = {key: value for key, value in (details or {}).items() if value is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            source=source.strip() if isinstance(source, str) and source.strip() else "pipeline",
            event=event,
            message=message,
            route_id=route_id,
            camera=camera,
            details=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        route_id: str | None = None,
    ) -> list[EventLogEntry]:
        """Return the newest entries, oldest first, optionally for one route."""

        with self._lock:
            entries = list(self._entries)
        if route_id:
            entries = [entry for entry in entries if entry.route_id == route_id]
        if limit is not None:
            limit = max(1, int(limit))
            entries = entries[-limit:]
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = EventLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)
        self._lines_on_disk = len(lines)

    def _persist(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        limit = self._entries.maxlen or 0
        try:
            if self._lines_on_disk + 1 > 2 * limit:
                text = "".join(
                    json.dumps(item.to_dict(), separators=(",", ":")) + "\n"
                    for item in self._entries
                )
                self._path.write_text(text, encoding="utf-8")
                self._lines_on_disk = len(self._entries)
                return
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            self._lines_on_disk += 1
        except OSError as exc:
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["EventLog", "EventLogEntry"]
