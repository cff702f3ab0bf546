"""Client for the PDF export service."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import httpx

from nexus.config import settings
from nexus.errors import ExportError
from nexus.store.models import ExportedDocument

logger = logging.getLogger(__name__)


class ExportClient:
    """Sends finished text to the export service and keeps the returned PDF.

    The service is treated as opaque: ``POST {title, body}`` returns PDF
    bytes, anything else is a failure.
    """

    def __init__(
        self,
        url: str | None = None,
        output_dir: Path | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url or settings.export_service_url
        self.output_dir = output_dir or settings.export_dir
        self._client = client

    async def _post(self, payload: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload)
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            return await client.post(self.url, json=payload)

    async def export(self, title: str, body: str) -> ExportedDocument:
        """Render *body* as a PDF and write it under the export directory.

        Raises:
            ExportError: The service failed or the file could not be written.
        """
        try:
            resp = await self._post({"title": title, "body": body})
        except httpx.HTTPError as exc:
            msg = f"Export service unreachable: {exc}"
            raise ExportError(msg) from exc

        if resp.status_code != 200:
            msg = f"Export service returned {resp.status_code}"
            raise ExportError(msg)

        path = self.output_dir / f"{settings.app_title}_{int(time.time() * 1000)}.pdf"
        try:
            await asyncio.to_thread(_write_file, path, resp.content)
        except OSError as exc:
            msg = f"Could not save export to {path}: {exc}"
            raise ExportError(msg) from exc

        logger.info("Exported %r to %s (%d bytes)", title, path, len(resp.content))
        return ExportedDocument(title=title, path=str(path), size_bytes=len(resp.content))


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
