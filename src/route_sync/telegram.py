"""Telegram Bot API transport used to deliver chunks."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the remote platform does not confirm a delivery."""


@dataclass(frozen=True, slots=True)
class VideoMetadata:
    """Message attributes sent alongside a video chunk."""

    caption: str
    width: int
    height: int
    duration_s: int
    supports_streaming: bool = True
    file_name: str | None = None

    def to_form(self) -> dict[str, str]:
        form = {
            "caption": self.caption,
            "duration": str(int(self.duration_s)),
            "supports_streaming": "true" if self.supports_streaming else "false",
        }
        if self.width > 0 and self.height > 0:
            form["width"] = str(int(self.width))
            form["height"] = str(int(self.height))
        return form


class Transport(Protocol):
    """Delivers one video file to a chat; raises :class:`TransportError` on failure."""

    async def send(self, chat_id: str, path: Path, metadata: VideoMetadata) -> Any:
        ...


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class TelegramTransport:
    """Thin async client for the Bot API ``sendVideo``/``sendMessage`` methods."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 600.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("A bot token is required")
        self._token = token
        self._api_url = api_url
        self._timeout = timeout
        self._client = client

    def method_url(self, method: str) -> str:
        return _join_url(self._api_url, f"bot{self._token}/{method}")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _call(
        self,
        method: str,
        *,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(self.method_url(method), data=data, files=files)
        except httpx.HTTPError as exc:
            raise TransportError(f"Telegram {method} request failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400 or not isinstance(payload, dict) or not payload.get("ok"):
            description = ""
            if isinstance(payload, dict):
                description = str(payload.get("description") or "")
            raise TransportError(
                f"Telegram {method} returned HTTP {response.status_code}: "
                f"{description or response.text.strip()}"
            )
        return payload.get("result")

    async def send(self, chat_id: str, path: Path, metadata: VideoMetadata) -> Any:
        video_path = Path(path)
        form = {"chat_id": str(chat_id), **metadata.to_form()}
        file_name = metadata.file_name or video_path.name
        logger.debug("Sending %s to chat %s", video_path.name, chat_id)
        try:
            handle = video_path.open("rb")
        except OSError as exc:
            raise TransportError(f"Unable to open {video_path}: {exc}") from exc
        with handle:
            return await self._call(
                "sendVideo",
                data=form,
                files={"video": (file_name, handle, "video/mp4")},
            )

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_markup: Mapping[str, Any] | None = None,
    ) -> Any:
        form = {"chat_id": str(chat_id), "text": text}
        if reply_markup is not None:
            form["reply_markup"] = json.dumps(reply_markup)
        return await self._call("sendMessage", data=form)

    async def get_me(self) -> Mapping[str, Any]:
        result = await self._call("getMe")
        return result if isinstance(result, Mapping) else {}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["TelegramTransport", "Transport", "TransportError", "VideoMetadata"]
