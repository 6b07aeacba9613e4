"""HTTP client for the fleet endpoint that serves recorded route footage."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import httpx

from .naming import download_file_name
from .storage import PARTIAL_DOWNLOAD_SUFFIX

logger = logging.getLogger(__name__)


class FleetError(RuntimeError):
    """Raised when the fleet endpoint cannot be reached or answers badly."""


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class FleetClient:
    """Lists routes and streams full camera footage to disk."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        chunk_size: int = 1024 * 1024,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("A fleet URL is required")
        self._base_url = base_url
        self._token = token
        self._timeout = timeout
        self._chunk_size = int(chunk_size)
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    def _params(self) -> dict[str, str]:
        return {"bypass_token": self._token} if self._token else {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Footage transfers can take far longer than the connect timeout.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, read=None)
            )
        return self._client

    async def list_routes(self) -> list[str]:
        """Return the sorted route identifiers known to the fleet endpoint."""

        client = await self._get_client()
        url = _join_url(self._base_url, "api/routes")
        try:
            response = await client.get(url, params=self._params())
            response.raise_for_status()
            payload: Any = response.json()
        except httpx.HTTPStatusError as exc:
            raise FleetError(
                f"Fleet returned HTTP {exc.response.status_code} for {url}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise FleetError(f"Unable to list routes: {exc}") from exc
        if not isinstance(payload, list):
            raise FleetError("Fleet route listing must be a JSON array")
        routes = sorted(str(item) for item in payload if isinstance(item, str) and item)
        logger.debug("Fleet lists %d routes", len(routes))
        return routes

    async def download_footage(self, route_id: str, camera: str, dest_dir: Path) -> Path:
        """Stream ``<route>-<camera>.mp4`` into *dest_dir* and return its path.

        Bytes land in a ``.tmp`` sibling that is renamed only once the body
        has been read completely.
        """

        directory = Path(dest_dir)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / download_file_name(route_id, camera)
        partial = target.with_name(target.name + PARTIAL_DOWNLOAD_SUFFIX)
        url = _join_url(self._base_url, f"footage/full/{camera}/{route_id}")
        client = await self._get_client()
        written = 0
        try:
            async with client.stream("GET", url, params=self._params()) as response:
                if response.status_code >= 400:
                    raise FleetError(
                        f"Fleet returned HTTP {response.status_code} for {camera} of {route_id}"
                    )
                with partial.open("wb") as handle:
                    async for data in response.aiter_bytes(self._chunk_size):
                        handle.write(data)
                        written += len(data)
                    handle.flush()
                    os.fsync(handle.fileno())
        except FleetError:
            partial.unlink(missing_ok=True)
            raise
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise FleetError(f"Unable to download {camera} of {route_id}: {exc}") from exc
        os.replace(partial, target)
        logger.info("Downloaded %s (%d MB)", target.name, round(written / 1024 / 1024))
        return target

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["FleetClient", "FleetError"]
