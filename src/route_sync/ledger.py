"""Durable record of per-route, per-camera transfer progress."""
from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1


class LedgerIOError(RuntimeError):
    """Raised when the ledger file cannot be read or written."""


def _default_document() -> Dict[str, Any]:
    return {"version": LEDGER_VERSION, "routes": {}}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_progress(value: Any) -> float:
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(progress) or progress < 0:
        return 0.0
    return progress


class ProgressLedger:
    """JSON backed ledger keyed by route id and camera.

    Every mutation loads the stored document, applies the change and writes
    the whole document back through a temporary file and ``os.replace`` so a
    crash never leaves a partially written ledger behind.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------ persistence ------------------------------
    def ensure_file(self) -> None:
        """Create an empty ledger when none exists yet."""

        with self._lock:
            if not self._path.exists():
                logger.info("Ledger file does not exist, creating %s", self._path)
                self._store(_default_document())

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_document()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise LedgerIOError(f"Unable to load ledger {self._path}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("routes", {}), dict):
            raise LedgerIOError(f"Ledger {self._path} must contain a JSON object with 'routes'")
        payload.setdefault("version", LEDGER_VERSION)
        payload.setdefault("routes", {})
        return payload

    def _store(self, document: Mapping[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2, sort_keys=True)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise LedgerIOError(f"Unable to save ledger {self._path}: {exc}") from exc

    @staticmethod
    def _camera_entry(document: Dict[str, Any], route_id: str, camera: str) -> Dict[str, Any]:
        routes = document.setdefault("routes", {})
        route = routes.get(route_id)
        if not isinstance(route, dict):
            route = {"route_id": route_id, "cameras": {}}
            routes[route_id] = route
        cameras = route.get("cameras")
        if not isinstance(cameras, dict):
            cameras = {}
            route["cameras"] = cameras
        entry = cameras.get(camera)
        if not isinstance(entry, dict):
            entry = {}
            cameras[camera] = entry
        return entry

    @staticmethod
    def _peek(document: Mapping[str, Any], route_id: str, camera: str) -> Mapping[str, Any]:
        route = document.get("routes", {}).get(route_id)
        if not isinstance(route, Mapping):
            return {}
        cameras = route.get("cameras")
        if not isinstance(cameras, Mapping):
            return {}
        entry = cameras.get(camera)
        return entry if isinstance(entry, Mapping) else {}

    # ------------------------------ upload progress ------------------------------
    def read(self, route_id: str, camera: str) -> float:
        """Return the confirmed upload offset in seconds (0.0 when unknown)."""

        with self._lock:
            entry = self._peek(self._load(), route_id, camera)
        telegram = entry.get("telegram")
        if not isinstance(telegram, Mapping):
            return 0.0
        return _coerce_progress(telegram.get("uploaded_until"))

    def advance(self, route_id: str, camera: str, candidate: float) -> float:
        """Merge *candidate* into the stored progress and return the result.

        The stored value only ever grows, so confirmations may arrive in any
        order or more than once.
        """

        value = _coerce_progress(candidate)
        with self._lock:
            document = self._load()
            entry = self._camera_entry(document, route_id, camera)
            telegram = entry.get("telegram")
            if not isinstance(telegram, dict):
                telegram = {}
                entry["telegram"] = telegram
            merged = max(_coerce_progress(telegram.get("uploaded_until")), value)
            telegram["uploaded_until"] = merged
            self._store(document)
        return merged

    def reset_upload(self, route_id: str, camera: str) -> None:
        """Forget upload progress so the video is sent again from the start."""

        with self._lock:
            document = self._load()
            entry = self._camera_entry(document, route_id, camera)
            entry.pop("telegram", None)
            entry.pop("processed_at", None)
            self._store(document)

    # ------------------------------ housekeeping ------------------------------
    def mark_downloaded(self, route_id: str, camera: str, when: str | None = None) -> None:
        with self._lock:
            document = self._load()
            self._camera_entry(document, route_id, camera)["downloaded_at"] = when or _utcnow()
            self._store(document)

    def is_downloaded(self, route_id: str, camera: str) -> bool:
        with self._lock:
            entry = self._peek(self._load(), route_id, camera)
        return bool(entry.get("downloaded_at"))

    def mark_processed(self, route_id: str, camera: str, when: str | None = None) -> None:
        """Record that a video has been fully uploaded and tidied up."""

        with self._lock:
            document = self._load()
            self._camera_entry(document, route_id, camera)["processed_at"] = when or _utcnow()
            self._store(document)

    def is_processed(self, route_id: str, camera: str) -> bool:
        with self._lock:
            entry = self._peek(self._load(), route_id, camera)
        return bool(entry.get("processed_at"))

    def forget_route(self, route_id: str) -> bool:
        """Drop every record of *route_id*; returns False when it was unknown."""

        with self._lock:
            document = self._load()
            removed = document.get("routes", {}).pop(route_id, None)
            if removed is None:
                return False
            self._store(document)
        return True

    def reset(self) -> None:
        with self._lock:
            self._store(_default_document())

    def snapshot(self) -> Dict[str, Any]:
        """Return the stored document as freshly parsed JSON."""

        with self._lock:
            return self._load()


__all__ = ["LEDGER_VERSION", "LedgerIOError", "ProgressLedger"]
