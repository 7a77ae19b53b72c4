"""Retrieve source document bytes from URLs or local paths."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import unquote, urlparse

import httpx

from ..extraction.errors import DocumentFetchError
from .models import DocumentMeta

logger = logging.getLogger(__name__)


class DocumentFetcher(Protocol):
    async def fetch(self, meta: DocumentMeta) -> bytes:
        """Return the document bytes or raise :class:`DocumentFetchError`."""


class HttpDocumentFetcher:
    """Fetch ``http(s)://`` URLs with httpx; ``file://`` URLs and bare paths are read from disk."""

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(self, meta: DocumentMeta) -> bytes:
        parsed = urlparse(meta.url)
        if parsed.scheme in {"http", "https"}:
            return await self._fetch_http(meta)
        if parsed.scheme == "file":
            return await self._read_local(meta, Path(unquote(parsed.path)))
        if not parsed.scheme or len(parsed.scheme) == 1:
            # Single-letter schemes are Windows drive letters.
            return await self._read_local(meta, Path(meta.url))
        raise DocumentFetchError(meta.id, f"unsupported URL scheme {parsed.scheme!r}")

    async def _fetch_http(self, meta: DocumentMeta) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(meta.url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DocumentFetchError(meta.id, str(exc)) from exc

        logger.debug("Fetched %s (%s bytes) from %s", meta.id, len(response.content), meta.url)
        return response.content

    async def _read_local(self, meta: DocumentMeta, path: Path) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DocumentFetchError(meta.id, str(exc)) from exc


def document_meta_for_path(path: Path, document_id: Optional[str] = None, media_type: str = "") -> DocumentMeta:
    """Build a :class:`DocumentMeta` for a local file.

    The default id combines the file stem with a digest of the resolved path, so
    same-named files from different directories stay distinct.
    """

    resolved = path.expanduser().resolve()
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:12]
    return DocumentMeta(
        id=document_id or f"{resolved.stem or 'document'}-{digest}",
        name=resolved.name,
        media_type=media_type,
        url=resolved.as_uri(),
    )
