"""Configuration management for route-sync."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

DEFAULT_CAMERAS: tuple[str, ...] = ("ecamera", "dcamera")
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"
DEFAULT_CHUNK_SIZE_BYTES = 2000 * 1024 * 1024
DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_CHUNK_WINDOW_S = 30 * 60.0
DEFAULT_CHUNK_SHRINK_STEP_S = 120.0
DEFAULT_SCRATCH_WAIT_TIMEOUT_S = 600.0
EXTRACTOR_CHOICES = {
    "pyav": "PyAV stream copy (in-process)",
    "ffmpeg": "ffmpeg command line stream copy",
}
DEFAULT_EXTRACTOR = "pyav"

_GIB = 1024**3
_MIB = 1024**2


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Runtime settings for the download and upload pipelines."""

    data_path: Path = Path("data")
    fleet_url: str = ""
    fleet_token: str | None = None
    cameras: tuple[str, ...] = DEFAULT_CAMERAS
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    telegram_api_url: str = DEFAULT_TELEGRAM_API_URL
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES
    delete_uploaded_videos: bool = False
    max_videos: int | None = None
    max_scratch_bytes: int | None = None
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    chunk_window_s: float = DEFAULT_CHUNK_WINDOW_S
    chunk_shrink_step_s: float = DEFAULT_CHUNK_SHRINK_STEP_S
    extractor: str = DEFAULT_EXTRACTOR
    scratch_wait_timeout_s: float | None = DEFAULT_SCRATCH_WAIT_TIMEOUT_S

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_path", Path(self.data_path))
        cameras = tuple(camera.strip() for camera in self.cameras if camera and camera.strip())
        if not cameras:
            raise ValueError("At least one camera must be configured")
        object.__setattr__(self, "cameras", cameras)
        if self.chunk_size_bytes <= 0:
            raise ValueError("Chunk size must be positive")
        if self.max_videos is not None and self.max_videos <= 0:
            raise ValueError("MAX_VIDEOS must be positive when set")
        if self.max_scratch_bytes is not None and self.max_scratch_bytes <= 0:
            raise ValueError("MAX_TMP_GB must be positive when set")
        for name in ("poll_interval_s", "chunk_window_s", "chunk_shrink_step_s"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive finite value")
            object.__setattr__(self, name, value)
        if self.scratch_wait_timeout_s is not None:
            timeout = float(self.scratch_wait_timeout_s)
            if not math.isfinite(timeout) or timeout <= 0:
                raise ValueError("scratch_wait_timeout_s must be a positive finite value")
            object.__setattr__(self, "scratch_wait_timeout_s", timeout)
        if self.extractor not in EXTRACTOR_CHOICES:
            raise ValueError(f"Unknown extractor: {self.extractor}")
        object.__setattr__(self, "fleet_url", self.fleet_url.rstrip("/"))

    # ------------------------------ derived paths ------------------------------
    @property
    def ledger_path(self) -> Path:
        return self.data_path / "db.json"

    @property
    def videos_path(self) -> Path:
        return self.data_path / "videos"

    @property
    def scratch_path(self) -> Path:
        return self.data_path / "tmp"

    @property
    def event_log_path(self) -> Path:
        return self.data_path / "events.jsonl"

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def fleet_enabled(self) -> bool:
        return bool(self.fleet_url)


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    if text in {"true", "1", "yes", "on", "enabled"}:
        return True
    if text in {"false", "0", "no", "off", "disabled"}:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _parse_number(value: Any, *, name: str) -> float | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite")
    return number


def _parse_cameras(value: Any) -> tuple[str, ...]:
    if value is None:
        return DEFAULT_CAMERAS
    cameras = tuple(part.strip() for part in str(value).split(",") if part.strip())
    return cameras or DEFAULT_CAMERAS


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_config(environ: Mapping[str, str] | None = None) -> SyncConfig:
    """Build a :class:`SyncConfig` from environment variables."""

    env = os.environ if environ is None else environ

    data_path_raw = _optional_text(env.get("DATA_PATH"))
    data_path = Path(data_path_raw) if data_path_raw else Path.cwd() / "data"

    chunk_mb = _parse_number(env.get("TELEGRAM_CHUNK_SIZE_MB"), name="TELEGRAM_CHUNK_SIZE_MB")
    chunk_size = int(chunk_mb * _MIB) if chunk_mb is not None else DEFAULT_CHUNK_SIZE_BYTES

    max_videos_raw = _parse_number(env.get("MAX_VIDEOS"), name="MAX_VIDEOS")
    max_videos = int(max_videos_raw) if max_videos_raw else None

    max_tmp_gb = _parse_number(env.get("MAX_TMP_GB"), name="MAX_TMP_GB")
    max_scratch = int(max_tmp_gb * _GIB) if max_tmp_gb else None

    poll_interval = _parse_number(env.get("POLL_INTERVAL_S"), name="POLL_INTERVAL_S")
    window = _parse_number(env.get("CHUNK_WINDOW_S"), name="CHUNK_WINDOW_S")
    shrink = _parse_number(env.get("CHUNK_SHRINK_STEP_S"), name="CHUNK_SHRINK_STEP_S")
    wait_timeout = _parse_number(env.get("SCRATCH_WAIT_TIMEOUT_S"), name="SCRATCH_WAIT_TIMEOUT_S")
    if wait_timeout is None:
        wait_timeout = DEFAULT_SCRATCH_WAIT_TIMEOUT_S
    elif wait_timeout < 0:
        raise ValueError("SCRATCH_WAIT_TIMEOUT_S must not be negative")
    elif wait_timeout == 0:
        # 0 waits for scratch space indefinitely.
        wait_timeout = None

    extractor = (_optional_text(env.get("ROUTE_SYNC_EXTRACTOR")) or DEFAULT_EXTRACTOR).lower()

    return SyncConfig(
        data_path=data_path,
        fleet_url=_optional_text(env.get("FLEET_URL")) or "",
        fleet_token=_optional_text(env.get("FLEET_TOKEN")),
        cameras=_parse_cameras(env.get("CAMERAS")),
        telegram_bot_token=_optional_text(env.get("TELEGRAM_BOT_TOKEN")),
        telegram_chat_id=_optional_text(env.get("TELEGRAM_CHAT_ID")),
        telegram_api_url=_optional_text(env.get("TELEGRAM_API_URL")) or DEFAULT_TELEGRAM_API_URL,
        chunk_size_bytes=chunk_size,
        delete_uploaded_videos=_parse_flag(env.get("DELETE_UPLOADED_VIDEOS"), default=False),
        max_videos=max_videos,
        max_scratch_bytes=max_scratch,
        poll_interval_s=poll_interval or DEFAULT_POLL_INTERVAL_S,
        chunk_window_s=window or DEFAULT_CHUNK_WINDOW_S,
        chunk_shrink_step_s=shrink or DEFAULT_CHUNK_SHRINK_STEP_S,
        extractor=extractor,
        scratch_wait_timeout_s=wait_timeout,
    )


__all__ = [
    "DEFAULT_CAMERAS",
    "DEFAULT_CHUNK_SIZE_BYTES",
    "DEFAULT_SCRATCH_WAIT_TIMEOUT_S",
    "EXTRACTOR_CHOICES",
    "SyncConfig",
    "load_config",
]
