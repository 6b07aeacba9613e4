"""FastAPI application wiring the transfer pipeline and its operator routes."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .chunking import ChunkPlanner
from .config import SyncConfig, load_config
from .event_log import EventLog
from .fleet import FleetClient, FleetError
from .ledger import LedgerIOError, ProgressLedger
from .media import MediaExtractor, create_extractor
from .naming import InvalidFileName, parse_video_name
from .orchestrator import TransferOrchestrator
from .pollers import DownloadPoller, UploadPoller
from .storage import (
    clean_partial_downloads,
    clean_scratch_files,
    directory_size,
    ensure_directories,
)
from .telegram import TelegramTransport, Transport, TransportError
from .upload_queue import UploadQueue
from .version import APP_VERSION

RESTART_GUARD_S = 30.0
STARTUP_NOTICE = "\N{AUTOMOBILE} Car started"


class ReuploadPayload(BaseModel):
    file_name: str


class RedownloadPayload(BaseModel):
    file_name: str | None = None
    route_id: str | None = None


def _default_restart() -> None:
    os.kill(os.getpid(), signal.SIGTERM)


def create_app(
    config: SyncConfig | None = None,
    *,
    ledger: ProgressLedger | None = None,
    transport: Transport | None = None,
    fleet: FleetClient | None = None,
    extractor: MediaExtractor | None = None,
    event_log: EventLog | None = None,
    restart_handler: Callable[[], Awaitable[None] | None] | None = None,
    restart_guard_s: float = RESTART_GUARD_S,
) -> FastAPI:
    settings = config or load_config()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await startup()
        try:
            yield
        finally:
            await shutdown()

    app = FastAPI(title="route-sync", version=APP_VERSION, lifespan=lifespan)

    logger = logging.getLogger(__name__)

    ledger = ledger or ProgressLedger(settings.ledger_path)
    events = event_log or EventLog(settings.event_log_path)
    if transport is None and settings.telegram_enabled:
        assert settings.telegram_bot_token is not None
        transport = TelegramTransport(
            settings.telegram_bot_token, api_url=settings.telegram_api_url
        )
    if fleet is None and settings.fleet_enabled:
        fleet = FleetClient(settings.fleet_url, settings.fleet_token)

    queue: UploadQueue | None = None
    upload_poller: UploadPoller | None = None
    if transport is not None:
        queue = UploadQueue(transport, ledger, settings.telegram_chat_id or "")
        planner = ChunkPlanner(
            extractor or create_extractor(settings.extractor),
            settings.scratch_path,
            window_s=settings.chunk_window_s,
            shrink_step_s=settings.chunk_shrink_step_s,
        )
        orchestrator = TransferOrchestrator(
            ledger,
            planner,
            queue,
            cap_bytes=settings.chunk_size_bytes,
            scratch_dir=settings.scratch_path,
            max_scratch_bytes=settings.max_scratch_bytes,
            guard_poll_interval=settings.poll_interval_s,
            guard_timeout=settings.scratch_wait_timeout_s,
            delete_uploaded=settings.delete_uploaded_videos,
        )
        upload_poller = UploadPoller(
            settings.videos_path,
            ledger,
            orchestrator,
            event_log=events,
            interval=settings.poll_interval_s,
        )
    else:
        logger.info("Telegram is not configured; uploads are disabled")

    download_poller: DownloadPoller | None = None
    if fleet is not None:
        download_poller = DownloadPoller(
            fleet,
            ledger,
            settings.videos_path,
            settings.cameras,
            max_videos=settings.max_videos,
            event_log=events,
            interval=settings.poll_interval_s,
        )
    else:
        logger.info("Fleet URL is not configured; downloads are disabled")

    restart = restart_handler or _default_restart
    started_at: float | None = None

    app.state.settings = settings
    app.state.ledger = ledger
    app.state.event_log = events
    app.state.upload_queue = queue
    app.state.upload_poller = upload_poller
    app.state.download_poller = download_poller

    async def _send_notice(text: str) -> None:
        send_message = getattr(transport, "send_message", None)
        if send_message is None or not settings.telegram_chat_id:
            return
        try:
            await send_message(settings.telegram_chat_id, text)
        except TransportError as exc:
            logger.warning("Unable to send notice: %s", exc)

    async def startup() -> None:
        nonlocal started_at
        events.record("system", "startup", "route-sync starting up.")
        await run_in_threadpool(
            ensure_directories,
            [settings.data_path, settings.videos_path, settings.scratch_path],
        )
        await run_in_threadpool(ledger.ensure_file)
        await run_in_threadpool(clean_partial_downloads, settings.videos_path)
        await run_in_threadpool(clean_scratch_files, settings.scratch_path)
        if queue is not None:
            queue.start()
        if upload_poller is not None:
            upload_poller.start()
        if download_poller is not None:
            download_poller.start()
        started_at = time.monotonic()
        await _send_notice(STARTUP_NOTICE)

    async def shutdown() -> None:
        events.record("system", "shutdown", "route-sync shutting down.")
        if download_poller is not None:
            await download_poller.aclose()
        if upload_poller is not None:
            await upload_poller.aclose()
        if queue is not None:
            await queue.aclose()
        for client in (transport, fleet):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    @app.get("/api/status")
    async def get_status() -> dict[str, Any]:
        scratch_bytes = await run_in_threadpool(directory_size, settings.scratch_path)
        return {
            "version": APP_VERSION,
            "uploads_enabled": queue is not None,
            "downloads_enabled": download_poller is not None,
            "upload_queue": queue.stats() if queue is not None else None,
            "scratch": {
                "used_bytes": scratch_bytes,
                "max_bytes": settings.max_scratch_bytes,
            },
            "uptime_s": None if started_at is None else time.monotonic() - started_at,
        }

    @app.get("/api/upload-queue")
    async def get_upload_queue() -> dict[str, Any]:
        items = await run_in_threadpool(queue.pending) if queue is not None else []
        return {"items": items}

    @app.get("/api/routes")
    async def get_routes() -> dict[str, Any]:
        try:
            snapshot = await run_in_threadpool(ledger.snapshot)
        except LedgerIOError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        stored: Mapping[str, Any] = snapshot.get("routes", {})
        route_ids = set(stored)
        fleet_error: str | None = None
        if fleet is not None:
            try:
                route_ids.update(await fleet.list_routes())
            except FleetError as exc:
                logger.warning("Unable to list fleet routes: %s", exc)
                fleet_error = str(exc)
        routes = []
        for route_id in sorted(route_ids):
            entry = stored.get(route_id)
            cameras = entry.get("cameras", {}) if isinstance(entry, Mapping) else {}
            routes.append({"route_id": route_id, "cameras": cameras})
        return {"routes": routes, "fleet_error": fleet_error}

    @app.post("/api/routes/reupload")
    async def reupload_route(payload: ReuploadPayload) -> dict[str, str]:
        try:
            source = parse_video_name(payload.file_name)
        except InvalidFileName as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await run_in_threadpool(ledger.reset_upload, source.route_id, source.camera)
        except LedgerIOError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        events.record(
            "operator",
            "reupload",
            f"Reuploading {source.file_name}",
            route_id=source.route_id,
            camera=source.camera,
        )
        return {"route_id": source.route_id, "camera": source.camera}

    @app.post("/api/routes/redownload")
    async def redownload_route(payload: RedownloadPayload) -> dict[str, Any]:
        route_id = (payload.route_id or "").strip()
        if not route_id and payload.file_name:
            try:
                route_id = parse_video_name(payload.file_name).fleet_route_id
            except InvalidFileName as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not route_id:
            raise HTTPException(status_code=400, detail="A route id or file name is required")
        try:
            forgotten = await run_in_threadpool(ledger.forget_route, route_id)
        except LedgerIOError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        events.record("operator", "redownload", f"Redownloading {route_id}", route_id=route_id)
        return {"route_id": route_id, "forgotten": forgotten}

    @app.post("/api/ledger/reset")
    async def reset_ledger() -> dict[str, str]:
        try:
            await run_in_threadpool(ledger.reset)
        except LedgerIOError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        events.record("operator", "ledger_reset", "Ledger reset")
        return {"status": "reset"}

    @app.post("/api/restart")
    async def restart_service() -> dict[str, str]:
        if started_at is None or time.monotonic() - started_at < restart_guard_s:
            raise HTTPException(
                status_code=409, detail="Service started too recently to restart"
            )
        events.record("operator", "restart", "Restart requested")
        await _send_notice("Restarting...")
        loop = asyncio.get_running_loop()

        def _invoke() -> None:
            result = restart()
            if asyncio.iscoroutine(result):
                loop.create_task(result)

        loop.call_soon(_invoke)
        return {"status": "restarting"}

    @app.get("/api/events")
    async def get_events(limit: int = 50, route_id: str | None = None) -> dict[str, Any]:
        entries = events.tail(limit, route_id=route_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
