"""End-to-end extraction: fetch, classify and orchestrate an array of documents."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..config import PipelineConfig
from ..ingestion.classifier import DocumentClassifier
from ..ingestion.detector import GENERIC_MEDIA_TYPES, is_supported_media_type
from ..ingestion.fetch import DocumentFetcher, HttpDocumentFetcher
from ..ingestion.models import DocumentMeta, PreparedDocument
from .errors import DocumentFetchError, InvalidDocumentsError
from .ledger import LoggingTelemetrySink, TelemetryLedger, TelemetrySink
from .models import ExtractionOutcome, ExtractionStatus
from .orchestrator import PhaseOrchestrator, StatusListener
from .rate_limiter import RateLimiterRegistry
from .service import GenerationService, build_generation_service
from .upload_cache import UploadCache

logger = logging.getLogger(__name__)


def validate_documents(metas: Sequence[DocumentMeta]) -> None:
    """Raise :class:`InvalidDocumentsError` for an empty list or incomplete entries."""

    if not metas:
        raise InvalidDocumentsError("No documents provided")
    problems: List[str] = []
    for index, meta in enumerate(metas):
        label = meta.id or f"#{index}"
        missing = [name for name in ("id", "name", "url") if not getattr(meta, name).strip()]
        if missing:
            problems.append(f"document {label} is missing {', '.join(missing)}")
            continue
        declared = meta.media_type.strip().lower()
        if declared not in GENERIC_MEDIA_TYPES and not is_supported_media_type(declared):
            problems.append(f"document {label} has unsupported media type {meta.media_type!r}")
    if problems:
        raise InvalidDocumentsError("; ".join(problems))


def dedupe_documents(metas: Sequence[DocumentMeta]) -> List[DocumentMeta]:
    """Keep the first entry for each document id."""

    seen: Dict[str, DocumentMeta] = {}
    for meta in metas:
        seen.setdefault(meta.id, meta)
    return list(seen.values())


class MenuExtractionPipeline:
    """Owns the upload cache and rate limiters shared by every run it executes."""

    def __init__(
        self,
        config: PipelineConfig,
        service: GenerationService,
        limiters: RateLimiterRegistry,
        uploads: UploadCache,
        *,
        fetcher: Optional[DocumentFetcher] = None,
        classifier: Optional[DocumentClassifier] = None,
        sink: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self.config = config
        self.uploads = uploads
        self.limiters = limiters
        self._fetcher = fetcher or HttpDocumentFetcher(timeout_seconds=config.fetch_timeout_seconds)
        self._classifier = classifier or DocumentClassifier(
            confidence_threshold=config.confidence_threshold,
            fallback_confidence_threshold=config.fallback_confidence_threshold,
            fallback_min_chars=config.fallback_min_chars,
            fallback_min_words=config.fallback_min_words,
        )
        self._orchestrator = PhaseOrchestrator(
            service,
            limiters,
            uploads,
            config,
            sink=sink,
            clock=clock,
            on_status=on_status,
        )
        self._clock = clock

    @classmethod
    def create(
        cls,
        config: Optional[PipelineConfig] = None,
        *,
        service: Optional[GenerationService] = None,
        fetcher: Optional[DocumentFetcher] = None,
        sink: Optional[TelemetrySink] = None,
        on_status: Optional[StatusListener] = None,
    ) -> "MenuExtractionPipeline":
        config = config or PipelineConfig()
        service = service or build_generation_service(config)
        return cls(
            config,
            service,
            RateLimiterRegistry.create(config),
            UploadCache(service.upload),
            fetcher=fetcher,
            sink=sink if sink is not None else LoggingTelemetrySink(),
            on_status=on_status,
        )

    @property
    def status(self) -> ExtractionStatus:
        return self._orchestrator.status

    async def _prepare(self, meta: DocumentMeta, ledger: TelemetryLedger) -> Optional[PreparedDocument]:
        try:
            data = await self._fetcher.fetch(meta)
        except DocumentFetchError as exc:
            ledger.error(0, "DOCUMENT_FETCH_FAILED", str(exc), data={"document_id": meta.id})
            return None

        doc = await asyncio.to_thread(
            self._classifier.classify,
            data,
            meta.media_type,
            document_id=meta.id,
            name=meta.name,
        )
        if doc.degraded_reason:
            ledger.warn(
                0,
                "CLASSIFICATION_DEGRADED",
                f"{doc.name}: {doc.degraded_reason}",
                data={"document_id": doc.id, "kind": doc.kind.value},
            )
        else:
            ledger.debug(
                0,
                "DOCUMENT_CLASSIFIED",
                f"{doc.name}: {doc.kind.value} (confidence {doc.confidence:.2f})",
                data={"document_id": doc.id, "chars": doc.char_count, "words": doc.word_count},
            )
        return doc

    async def run(self, metas: Sequence[DocumentMeta]) -> ExtractionOutcome:
        """Extract menu items from ``metas``.

        Raises :class:`InvalidDocumentsError` before doing any work when the input is
        malformed. Every other failure is reported in the returned outcome.
        """

        validate_documents(metas)
        started = self._clock()
        ledger = self._orchestrator.new_ledger()
        warnings: List[str] = []

        unique = dedupe_documents(metas)
        if len(unique) != len(metas):
            message = f"Ignored {len(metas) - len(unique)} duplicate document id(s)"
            warnings.append(message)
            ledger.warn(0, "DUPLICATE_DOCUMENTS", message)

        prepared = await asyncio.gather(*(self._prepare(meta, ledger) for meta in unique))
        documents = [doc for doc in prepared if doc is not None]
        skipped = len(unique) - len(documents)
        if skipped:
            warnings.append(f"{skipped} document(s) could not be fetched and were skipped")

        if not documents:
            error = DocumentFetchError("*", "no document could be fetched")
            ledger.error(0, "EXTRACTION_FAILED", str(error))
            return ExtractionOutcome(
                success=False,
                costs=ledger.costs(),
                processing_time_ms=int((self._clock() - started) * 1000),
                error=str(error),
                error_type=error.error_type,
                failed_phase=0,
                warnings=warnings,
                ledger=ledger.entries(),
                telemetry=ledger.telemetry(),
            )

        outcome = await self._orchestrator.run(documents, ledger=ledger, warnings=warnings)
        outcome.processing_time_ms = int((self._clock() - started) * 1000)
        return outcome

    async def shutdown(self) -> None:
        await self.uploads.shutdown()
        await self.limiters.shutdown()


async def run_extraction(
    metas: Sequence[DocumentMeta],
    config: Optional[PipelineConfig] = None,
    **kwargs,
) -> ExtractionOutcome:
    """Create a pipeline, run it once and release its resources."""

    pipeline = MenuExtractionPipeline.create(config, **kwargs)
    try:
        return await pipeline.run(metas)
    finally:
        await pipeline.shutdown()
