"""Text/OCR triage for source documents.

Every document kind is handled by a capability object (``TextExtractor`` for PDFs,
``SpreadsheetParser`` for sheets) selected through a dispatch table keyed by
:class:`DocumentType`. :meth:`DocumentClassifier.classify` never raises: anything
that cannot be read as text degrades to an image-bearing document so the model's
vision path can still attempt OCR.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Callable, Dict, List, Optional, Protocol

import pandas as pd
from pypdf import PdfReader

from ..extraction.errors import ClassificationDegraded
from .detector import CSV_MEDIA_TYPE, document_kind, resolve_media_type
from .models import DocumentType, PreparedDocument, PreparedPage, PreparedSheet

logger = logging.getLogger(__name__)

CELL_SEPARATOR = " | "

# confidence assigned to text recovered by the simplified extraction pass
FALLBACK_TEXT_CONFIDENCE = 0.4


@dataclass
class ExtractedText:
    """Raw result of a PDF text extraction attempt."""

    text: str
    pages: List[str] = field(default_factory=list)
    page_count: int = 0


@dataclass
class TextStats:
    char_count: int
    word_count: int
    confidence: float


class TextExtractor(Protocol):
    def extract(self, data: bytes) -> ExtractedText:
        """Full extraction; may raise on malformed input."""

    def extract_simple(self, data: bytes) -> ExtractedText:
        """Tolerant extraction used once when :meth:`extract` fails."""


class SpreadsheetParser(Protocol):
    def parse(self, data: bytes, media_type: str) -> List[PreparedSheet]:
        """Return one flattened text block per sheet."""


class PypdfTextExtractor:
    """pypdf-backed extractor."""

    def extract(self, data: bytes) -> ExtractedText:
        reader = PdfReader(BytesIO(data), strict=True)
        pages = [page.extract_text() or "" for page in reader.pages]
        return ExtractedText(text="\n".join(pages), pages=pages, page_count=len(pages))

    def extract_simple(self, data: bytes) -> ExtractedText:
        reader = PdfReader(BytesIO(data), strict=False)
        pages: List[str] = []
        for index, page in enumerate(reader.pages):
            try:
                pages.append(page.extract_text() or "")
            except Exception as exc:  # pragma: no cover - page-level pypdf failures
                logger.debug("Skipping unreadable page %s: %s", index + 1, exc)
                pages.append("")
        return ExtractedText(text="\n".join(pages), pages=pages, page_count=len(pages))


class PandasSpreadsheetParser:
    """pandas-backed parser for xlsx/xls/csv payloads."""

    def parse(self, data: bytes, media_type: str) -> List[PreparedSheet]:
        if media_type in {CSV_MEDIA_TYPE, "application/csv"}:
            frames = {"Sheet1": pd.read_csv(BytesIO(data), header=None, dtype=str, keep_default_na=False)}
        else:
            frames = pd.read_excel(BytesIO(data), sheet_name=None, header=None, dtype=str)

        sheets: List[PreparedSheet] = []
        for name, frame in frames.items():
            frame = frame.fillna("")
            lines: List[str] = []
            for row in frame.itertuples(index=False):
                cells = [str(value).strip() for value in row]
                if not any(cells):
                    continue
                lines.append(CELL_SEPARATOR.join(cells))
            sheets.append(PreparedSheet(name=str(name), text="\n".join(lines), rows=len(lines)))
        return sheets


def score_text(text: str, page_count: int) -> TextStats:
    """Confidence that ``text`` is genuine, machine-extractable menu text."""

    content = text.strip()
    char_count = len(content)
    words = content.split()
    word_count = len(words)
    chars_per_page = char_count / max(page_count, 1)

    confidence = 0.0
    if char_count > 50:
        confidence += 0.25
    if word_count > 10:
        confidence += 0.25
    if chars_per_page > 25:
        confidence += 0.2
    if any(len(word) > 2 for word in words):
        confidence += 0.15
    if "\n" in content or " " in content:
        confidence += 0.15

    return TextStats(char_count=char_count, word_count=word_count, confidence=round(min(confidence, 1.0), 4))


@dataclass
class _Source:
    document_id: str
    name: str
    media_type: str
    data: bytes


class DocumentClassifier:
    """Turns raw bytes into a :class:`PreparedDocument`."""

    def __init__(
        self,
        text_extractor: Optional[TextExtractor] = None,
        spreadsheet_parser: Optional[SpreadsheetParser] = None,
        *,
        confidence_threshold: float = 0.3,
        fallback_confidence_threshold: float = 0.3,
        fallback_min_chars: int = 10,
        fallback_min_words: int = 2,
    ) -> None:
        self._text_extractor = text_extractor or PypdfTextExtractor()
        self._spreadsheet_parser = spreadsheet_parser or PandasSpreadsheetParser()
        self.confidence_threshold = confidence_threshold
        self.fallback_confidence_threshold = fallback_confidence_threshold
        self.fallback_min_chars = fallback_min_chars
        self.fallback_min_words = fallback_min_words
        self._handlers: Dict[DocumentType, Callable[[_Source], PreparedDocument]] = {
            DocumentType.TEXT_PDF: self._classify_pdf,
            DocumentType.IMAGE: self._classify_image,
            DocumentType.SPREADSHEET: self._classify_spreadsheet,
            DocumentType.UNKNOWN: self._classify_unknown,
        }

    def classify(
        self,
        data: bytes,
        declared_media_type: Optional[str],
        *,
        document_id: str = "document",
        name: str = "",
    ) -> PreparedDocument:
        media_type = resolve_media_type(data, declared_media_type, name)
        source = _Source(document_id=document_id, name=name or document_id, media_type=media_type, data=data)
        handler = self._handlers[document_kind(media_type)]
        try:
            return handler(source)
        except Exception as exc:
            return self._degrade(source, f"{type(exc).__name__}: {exc}")

    def _classify_pdf(self, source: _Source) -> PreparedDocument:
        try:
            extracted = self._text_extractor.extract(source.data)
        except Exception as exc:
            logger.warning("Primary PDF extraction failed for %s, retrying simplified: %s", source.document_id, exc)
            return self._classify_pdf_fallback(source)

        stats = score_text(extracted.text, extracted.page_count)
        if stats.confidence > self.confidence_threshold and stats.char_count > 0 and stats.word_count > 0:
            return self._text_pdf(source, extracted, stats)

        reason = f"low text confidence {stats.confidence:.2f} ({stats.char_count} chars, {stats.word_count} words)"
        return self._degrade(
            source,
            reason,
            char_count=stats.char_count,
            word_count=stats.word_count,
            page_count=extracted.page_count,
        )

    def _classify_pdf_fallback(self, source: _Source) -> PreparedDocument:
        try:
            extracted = self._text_extractor.extract_simple(source.data)
        except Exception as exc:
            return self._degrade(source, f"simplified extraction failed: {exc}")

        content = extracted.text.strip()
        char_count = len(content)
        word_count = len(content.split())
        has_text = char_count > self.fallback_min_chars and word_count > self.fallback_min_words
        confidence = FALLBACK_TEXT_CONFIDENCE if has_text else 0.0
        if has_text and confidence > self.fallback_confidence_threshold:
            stats = TextStats(char_count=char_count, word_count=word_count, confidence=confidence)
            return self._text_pdf(source, extracted, stats)

        reason = f"simplified extraction below minimums ({char_count} chars, {word_count} words)"
        if has_text:
            reason = f"simplified extraction confidence {confidence:.2f} not above {self.fallback_confidence_threshold:.2f}"
        return self._degrade(
            source,
            reason,
            char_count=char_count,
            word_count=word_count,
            page_count=extracted.page_count,
        )

    def _text_pdf(self, source: _Source, extracted: ExtractedText, stats: TextStats) -> PreparedDocument:
        pages = [
            PreparedPage(page_number=index, text=text.strip())
            for index, text in enumerate(extracted.pages, start=1)
        ]
        return PreparedDocument(
            id=source.document_id,
            name=source.name,
            media_type=source.media_type,
            kind=DocumentType.TEXT_PDF,
            text_content=extracted.text.strip(),
            pages=pages,
            page_count=extracted.page_count,
            char_count=stats.char_count,
            word_count=stats.word_count,
            confidence=stats.confidence,
            size_bytes=len(source.data),
        )

    def _classify_image(self, source: _Source) -> PreparedDocument:
        payload = base64.b64encode(source.data).decode("ascii")
        return PreparedDocument(
            id=source.document_id,
            name=source.name,
            media_type=source.media_type,
            kind=DocumentType.IMAGE,
            raw_bytes_base64=payload,
            page_images=[payload],
            page_count=1,
            size_bytes=len(source.data),
        )

    def _classify_spreadsheet(self, source: _Source) -> PreparedDocument:
        sheets = self._spreadsheet_parser.parse(source.data, source.media_type)
        blocks = [f"Sheet: {sheet.name}\n{sheet.text}" for sheet in sheets if sheet.has_content]
        text = "\n\n".join(blocks)
        stats = score_text(text, max(len(sheets), 1))
        return PreparedDocument(
            id=source.document_id,
            name=source.name,
            media_type=source.media_type,
            kind=DocumentType.SPREADSHEET,
            text_content=text,
            sheets=sheets,
            page_count=len(sheets),
            char_count=stats.char_count,
            word_count=stats.word_count,
            confidence=1.0,
            size_bytes=len(source.data),
        )

    def _classify_unknown(self, source: _Source) -> PreparedDocument:
        return self._degrade(source, f"unsupported media type {source.media_type!r}", kind=DocumentType.UNKNOWN)

    def _degrade(
        self,
        source: _Source,
        reason: str,
        *,
        kind: Optional[DocumentType] = None,
        char_count: int = 0,
        word_count: int = 0,
        page_count: int = 0,
    ) -> PreparedDocument:
        warning = ClassificationDegraded(source.document_id, reason)
        logger.warning("%s", warning)
        if kind is None:
            kind = document_kind(source.media_type)
            if kind is DocumentType.TEXT_PDF:
                kind = DocumentType.SCANNED_PDF
        return PreparedDocument(
            id=source.document_id,
            name=source.name,
            media_type=source.media_type,
            kind=kind,
            raw_bytes_base64=base64.b64encode(source.data).decode("ascii"),
            page_count=page_count,
            char_count=char_count,
            word_count=word_count,
            confidence=0.0,
            size_bytes=len(source.data),
            degraded_reason=reason,
        )


def classify(
    data: bytes,
    declared_media_type: Optional[str],
    *,
    document_id: str = "document",
    name: str = "",
) -> PreparedDocument:
    """Classify with default capabilities and thresholds."""

    return DocumentClassifier().classify(data, declared_media_type, document_id=document_id, name=name)
