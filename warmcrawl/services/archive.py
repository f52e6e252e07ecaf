"""Best-effort archiving of crawl results to an object store.

The handler schedules an archive and never waits for it. All errors are
caught and logged here; archiving never affects a crawl response.

Two objects are written per archived result:
- ``{id}.html``: raw HTML of the first page
- ``{id}.json``: the first page with its HTML removed
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import httpx

from warmcrawl.config import settings
from warmcrawl.core.metrics import archive_uploads_total

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    async def upload(
        self, key: str, data: bytes, overwrite: bool, content_type: str | None = None
    ) -> int:
        """Store ``data`` under ``key`` and return the number of bytes written."""
        ...


class LocalObjectStore:
    """Objects are files in a directory; the key is the file name."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    async def upload(
        self, key: str, data: bytes, overwrite: bool, content_type: str | None = None
    ) -> int:
        path = self.root / key
        if path.resolve().parent != self.root.resolve():
            raise ValueError(f"Invalid object key: {key!r}")
        await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        mode = "wb" if overwrite else "xb"
        async with aiofiles.open(path, mode) as f:
            await f.write(data)
        return len(data)


class HttpObjectStore:
    """PUTs objects to ``{base_url}/{key}`` (S3-compatible or any PUT endpoint).

    Without ``overwrite`` the request carries ``If-None-Match: *`` so stores
    that support conditional writes reject replacing an existing object.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    async def upload(
        self, key: str, data: bytes, overwrite: bool, content_type: str | None = None
    ) -> int:
        headers = {"Content-Type": content_type or "application/json"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.put(f"{self.base_url}/{key}", content=data, headers=headers)
            resp.raise_for_status()
        return len(data)


def build_object_store() -> ObjectStore | None:
    """Object store selected by ARCHIVE_BACKEND, or None when archiving is off."""
    backend = settings.ARCHIVE_BACKEND.lower()
    if backend == "local":
        return LocalObjectStore(settings.ARCHIVE_DIR)
    if backend == "http":
        if not settings.ARCHIVE_UPLOAD_URL:
            logger.warning("ARCHIVE_BACKEND=http but ARCHIVE_UPLOAD_URL is empty, archiving disabled")
            return None
        return HttpObjectStore(
            settings.ARCHIVE_UPLOAD_URL,
            auth_token=settings.ARCHIVE_AUTH_TOKEN,
            timeout=settings.ARCHIVE_TIMEOUT,
        )
    if backend:
        logger.warning(f"Unknown ARCHIVE_BACKEND '{backend}', archiving disabled")
    return None


def _first_page(result: Any) -> dict | None:
    """Search crawlers return a list of pages; other crawlers a single page."""
    if isinstance(result, list):
        result = result[0] if result else None
    return result if isinstance(result, dict) else None


class ResultArchiver:
    def __init__(self, store: ObjectStore | None):
        self.store = store
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.store is not None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, search_id: str, result: Any) -> asyncio.Task | None:
        """Start archiving in the background without waiting for it."""
        if self.store is None:
            return None
        task = asyncio.create_task(self.archive(search_id, result))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def archive(self, search_id: str, result: Any) -> dict[str, int] | None:
        """Upload the first page of ``result``. Returns bytes written per object."""
        if self.store is None:
            return None
        try:
            page = _first_page(result)
            if page is None or not isinstance(page.get("html"), str):
                raise ValueError("result has no page html to archive")
            html = page["html"].encode("utf-8")
            document = {k: v for k, v in page.items() if k != "html"}

            html_key = f"{search_id}.html"
            html_bytes = await self.store.upload(
                html_key, html, False, "text/html; charset=utf-8"
            )
            logger.info("Uploaded %d bytes to %s", html_bytes, html_key)

            json_key = f"{search_id}.json"
            json_bytes = await self.store.upload(
                json_key,
                json.dumps(document, indent=2, default=str).encode("utf-8"),
                False,
            )
            logger.info("Uploaded %d bytes to %s", json_bytes, json_key)
        except Exception as e:
            logger.error(f"Could not archive results for {search_id}: {e}")
            archive_uploads_total.labels(status="error").inc()
            return None

        archive_uploads_total.labels(status="ok").inc()
        return {"html": html_bytes, "json": json_bytes}

    async def drain(self) -> None:
        """Wait for pending archive tasks (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
