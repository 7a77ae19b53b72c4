"""Media type detection utilities."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Optional

import filetype

from .models import DocumentType

logger = logging.getLogger(__name__)

GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream", "application/unknown"}

PDF_MEDIA_TYPE = "application/pdf"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MEDIA_TYPE = "application/vnd.ms-excel"
CSV_MEDIA_TYPE = "text/csv"

SPREADSHEET_MEDIA_TYPES = {
    XLSX_MEDIA_TYPE,
    XLS_MEDIA_TYPE,
    CSV_MEDIA_TYPE,
    "application/csv",
    "application/vnd.oasis.opendocument.spreadsheet",
}

_SUFFIX_MEDIA_TYPES = {
    ".pdf": PDF_MEDIA_TYPE,
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
    ".xlsx": XLSX_MEDIA_TYPE,
    ".xls": XLS_MEDIA_TYPE,
    ".csv": CSV_MEDIA_TYPE,
}

_SIGNATURES = {
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"\xff\xd8\xff": "image/jpeg",
    b"II*\x00": "image/tiff",
    b"MM\x00*": "image/tiff",
    b"BM": "image/bmp",
    b"GIF87a": "image/gif",
    b"GIF89a": "image/gif",
}


def sniff_media_type(data: bytes) -> Optional[str]:
    """Guess a media type from magic bytes, or ``None`` when nothing matches."""

    if not data:
        return None

    try:
        kind = filetype.guess(data)
    except Exception as exc:  # pragma: no cover - filetype raises on exotic inputs
        logger.debug("filetype.guess failed: %s", exc)
        kind = None
    if kind and kind.mime:
        return kind.mime.lower()

    header = data[:8]
    if header.startswith(b"%PDF"):
        return PDF_MEDIA_TYPE

    for sig, mime in _SIGNATURES.items():
        if header.startswith(sig):
            return mime

    return None


def media_type_from_name(file_name: str) -> Optional[str]:
    suffix = PurePosixPath(file_name or "").suffix.lower()
    return _SUFFIX_MEDIA_TYPES.get(suffix)


def resolve_media_type(data: bytes, declared_media_type: Optional[str], file_name: str = "") -> str:
    """Return the effective media type of a document.

    A specific declared type wins. Generic or missing declarations are replaced by
    magic-byte sniffing, then by the file name suffix.
    """

    declared = (declared_media_type or "").split(";")[0].strip().lower()
    if declared not in GENERIC_MEDIA_TYPES:
        return declared

    sniffed = sniff_media_type(data)
    # Zip containers are only meaningful here as spreadsheets.
    if sniffed and sniffed != "application/zip":
        return sniffed

    from_name = media_type_from_name(file_name)
    if from_name:
        return from_name

    return sniffed or declared or "application/octet-stream"


def document_kind(media_type: str) -> DocumentType:
    """Map a media type onto the coarse kind used to pick a parser.

    PDFs map to ``TEXT_PDF`` here; the classifier downgrades them to
    ``SCANNED_PDF`` when no usable text is found.
    """

    if media_type == PDF_MEDIA_TYPE:
        return DocumentType.TEXT_PDF
    if media_type.startswith("image/"):
        return DocumentType.IMAGE
    if media_type in SPREADSHEET_MEDIA_TYPES:
        return DocumentType.SPREADSHEET
    return DocumentType.UNKNOWN


def is_supported_media_type(media_type: str) -> bool:
    return document_kind(media_type) is not DocumentType.UNKNOWN
