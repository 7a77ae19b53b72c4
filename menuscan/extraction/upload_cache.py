"""Deduplicating cache of document submissions to the model service."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..ingestion.models import PreparedDocument
from .errors import UploadFailed
from .models import UploadedFileHandle
from .service import RemoteFile

logger = logging.getLogger(__name__)

Uploader = Callable[[bytes, str, str], Awaitable[RemoteFile]]
UploadListener = Callable[[str, PreparedDocument, Optional[UploadedFileHandle]], None]


def document_payload(doc: PreparedDocument) -> bytes:
    """Bytes to submit for ``doc``: the original file when available, else its text."""

    if doc.raw_bytes_base64:
        return base64.b64decode(doc.raw_bytes_base64)
    if doc.page_images:
        return base64.b64decode(doc.page_images[0])
    return (doc.text_content or "").encode("utf-8")


class UploadCache:
    """Memoizes uploads by document id and coalesces concurrent requests for the same id.

    At most one submission per id is ever in flight. A failed submission leaves no
    trace so the next ``submit`` starts over.
    """

    def __init__(
        self,
        uploader: Uploader,
        *,
        clock: Callable[[], float] = time.time,
        listener: Optional[UploadListener] = None,
    ) -> None:
        self._uploader = uploader
        self._clock = clock
        self._listener = listener
        self._completed: Dict[str, UploadedFileHandle] = {}
        self._pending: Dict[str, asyncio.Task[UploadedFileHandle]] = {}
        self.remote_submissions = 0

    def _notify(self, event: str, doc: PreparedDocument, handle: Optional[UploadedFileHandle] = None) -> None:
        if self._listener is not None:
            self._listener(event, doc, handle)

    async def submit(self, doc: PreparedDocument) -> UploadedFileHandle:
        cached = self._completed.get(doc.id)
        if cached is not None:
            logger.debug("Upload cache hit for %s", doc.id)
            self._notify("hit", doc, cached)
            return cached

        pending = self._pending.get(doc.id)
        if pending is None:
            pending = asyncio.ensure_future(self._perform_upload(doc))
            self._pending[doc.id] = pending
            pending.add_done_callback(lambda task, doc_id=doc.id: self._settle(doc_id, task))
        else:
            logger.debug("Joining in-flight upload for %s", doc.id)
            self._notify("coalesced", doc)

        return await asyncio.shield(pending)

    def _settle(self, document_id: str, task: "asyncio.Task[UploadedFileHandle]") -> None:
        if self._pending.get(document_id) is task:
            del self._pending[document_id]
        if task.cancelled() or task.exception() is not None:
            return
        self._completed[document_id] = task.result()

    async def _perform_upload(self, doc: PreparedDocument) -> UploadedFileHandle:
        self.remote_submissions += 1
        self._notify("start", doc)
        try:
            remote = await self._uploader(document_payload(doc), doc.media_type, doc.name)
        except Exception as exc:
            self._notify("failed", doc)
            raise UploadFailed(doc.id, str(exc)) from exc

        handle = UploadedFileHandle(
            document_id=doc.id,
            remote_uri=remote.uri,
            remote_name=remote.name,
            mime_type=remote.mime_type or doc.media_type,
            size_bytes=remote.size_bytes or doc.size_bytes,
            uploaded_at=self._clock(),
        )
        self._notify("complete", doc, handle)
        return handle

    async def submit_all(self, docs: Sequence[PreparedDocument]) -> Dict[str, UploadedFileHandle]:
        """Submit every document concurrently; raise the first failure once all have settled."""

        results = await asyncio.gather(*(self.submit(doc) for doc in docs), return_exceptions=True)
        handles: Dict[str, UploadedFileHandle] = {}
        for doc, result in zip(docs, results):
            if isinstance(result, BaseException):
                raise result
            handles[doc.id] = result
        return handles

    def get(self, document_id: str) -> Optional[UploadedFileHandle]:
        return self._completed.get(document_id)

    def evict_older_than(self, max_age_seconds: float) -> int:
        cutoff = self._clock() - max_age_seconds
        stale = [doc_id for doc_id, handle in self._completed.items() if handle.uploaded_at < cutoff]
        for doc_id in stale:
            del self._completed[doc_id]
        if stale:
            logger.debug("Evicted %s stale upload handles", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        handles: List[UploadedFileHandle] = list(self._completed.values())
        total_size = sum(handle.size_bytes for handle in handles)
        average_age = sum(now - handle.uploaded_at for handle in handles) / len(handles) if handles else 0.0
        return {
            "count": len(handles),
            "pending": len(self._pending),
            "total_size_bytes": total_size,
            "average_age_seconds": round(average_age, 3),
            "remote_submissions": self.remote_submissions,
        }

    def clear(self) -> None:
        self._completed.clear()

    async def shutdown(self) -> None:
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        self._completed.clear()
