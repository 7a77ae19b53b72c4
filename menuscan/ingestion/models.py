"""Common data models for document ingestion."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class DocumentType(str, Enum):
    """Enumerated document types detected during classification."""

    TEXT_PDF = "text_pdf"
    SCANNED_PDF = "scanned_pdf"
    IMAGE = "image"
    SPREADSHEET = "spreadsheet"
    UNKNOWN = "unknown"


class DocumentMeta(BaseModel):
    """Caller-owned description of a source document."""

    id: str
    name: str
    media_type: str
    url: str


class PreparedPage(BaseModel):
    """Text extracted from a single PDF page."""

    page_number: int
    text: str = ""

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip())


class PreparedSheet(BaseModel):
    """Flattened text of one spreadsheet sheet."""

    name: str
    text: str = ""
    rows: int = 0

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip())


class PreparedDocument(BaseModel):
    """Classifier output: one document ready for the extraction phases.

    Text-bearing documents carry ``text_content`` (plus ``pages`` or ``sheets``);
    image-bearing documents carry ``raw_bytes_base64`` and, for photographs,
    ``page_images``.
    """

    id: str
    name: str
    media_type: str
    kind: DocumentType = DocumentType.UNKNOWN
    text_content: Optional[str] = None
    raw_bytes_base64: Optional[str] = None
    page_images: List[str] = Field(default_factory=list)
    pages: List[PreparedPage] = Field(default_factory=list)
    sheets: List[PreparedSheet] = Field(default_factory=list)
    page_count: int = 0
    char_count: int = 0
    word_count: int = 0
    confidence: float = 0.0
    size_bytes: int = 0
    degraded_reason: Optional[str] = None

    @property
    def is_text_bearing(self) -> bool:
        return self.text_content is not None

    @property
    def is_image_bearing(self) -> bool:
        return self.text_content is None
