"""Tests for the Telegram Bot API transport."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from route_sync.telegram import TelegramTransport, TransportError, VideoMetadata


def _transport(handler) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramTransport("123:abc", api_url="https://bot.example/", client=client)


def test_send_posts_multipart_video(tmp_path: Path) -> None:
    chunk = tmp_path / "route-ecamera--0.mp4"
    chunk.write_bytes(b"mp4-bytes")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        request.read()
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})

    async def _exercise() -> object:
        transport = _transport(handler)
        try:
            return await transport.send(
                "-100",
                chunk,
                VideoMetadata(
                    caption="hello",
                    width=1928,
                    height=1208,
                    duration_s=61,
                    file_name="route--0-ecamera.mp4",
                ),
            )
        finally:
            await transport.close()

    result = asyncio.run(_exercise())

    assert result == {"message_id": 7}
    request = seen[0]
    assert str(request.url) == "https://bot.example/bot123:abc/sendVideo"
    body = request.content
    assert b'name="chat_id"' in body and b"-100" in body
    assert b'name="supports_streaming"' in body
    assert b'filename="route--0-ecamera.mp4"' in body
    assert b"mp4-bytes" in body


def test_send_raises_when_api_reports_failure(tmp_path: Path) -> None:
    chunk = tmp_path / "chunk.mp4"
    chunk.write_bytes(b"data")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            413, json={"ok": False, "description": "Request Entity Too Large"}
        )

    async def _exercise() -> None:
        transport = _transport(handler)
        try:
            await transport.send("1", chunk, VideoMetadata("c", 0, 0, 1))
        finally:
            await transport.close()

    with pytest.raises(TransportError, match="Request Entity Too Large"):
        asyncio.run(_exercise())


def test_network_errors_become_transport_errors(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async def _exercise() -> None:
        transport = _transport(handler)
        try:
            await transport.send_message("1", "hi")
        finally:
            await transport.close()

    with pytest.raises(TransportError, match="unreachable"):
        asyncio.run(_exercise())


def test_missing_chunk_is_a_transport_error(tmp_path: Path) -> None:
    async def _exercise() -> None:
        transport = _transport(lambda request: httpx.Response(200, json={"ok": True}))
        try:
            await transport.send("1", tmp_path / "missing.mp4", VideoMetadata("c", 0, 0, 1))
        finally:
            await transport.close()

    with pytest.raises(TransportError):
        asyncio.run(_exercise())


def test_send_message_and_get_me() -> None:
    calls: list[tuple[str, bytes]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.url.path, request.read()))
        if request.url.path.endswith("/getMe"):
            return httpx.Response(200, json={"ok": True, "result": {"username": "sync_bot"}})
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    async def _exercise() -> object:
        transport = _transport(handler)
        try:
            await transport.send_message("5", "Car started", reply_markup={"inline_keyboard": []})
            return await transport.get_me()
        finally:
            await transport.close()

    me = asyncio.run(_exercise())

    assert me == {"username": "sync_bot"}
    assert calls[0][0] == "/bot123:abc/sendMessage"
    assert b"Car+started" in calls[0][1]


def test_video_metadata_form_omits_unknown_dimensions() -> None:
    form = VideoMetadata(caption="c", width=0, height=0, duration_s=12).to_form()

    assert form == {"caption": "c", "duration": "12", "supports_streaming": "true"}


def test_transport_requires_token() -> None:
    with pytest.raises(ValueError):
        TelegramTransport("")
