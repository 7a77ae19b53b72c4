from __future__ import annotations

import base64
from io import BytesIO
from typing import List, Optional

import pytest
from menuscan.ingestion.classifier import (
    FALLBACK_TEXT_CONFIDENCE,
    DocumentClassifier,
    ExtractedText,
    classify,
    score_text,
)
from menuscan.ingestion.detector import CSV_MEDIA_TYPE, PDF_MEDIA_TYPE, XLSX_MEDIA_TYPE
from menuscan.ingestion.models import DocumentType

MENU_TEXT = (
    "APPETIZERS\n"
    "Crispy Calamari with lemon aioli 12.99\n"
    "Loaded Nachos with cheese, jalapenos and salsa 10.50\n"
    "ENTREES\n"
    "Classic Burger served with fries 9.99"
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class StubExtractor:
    def __init__(
        self,
        pages: Optional[List[str]] = None,
        *,
        fail: bool = False,
        simple_pages: Optional[List[str]] = None,
        simple_fail: bool = False,
    ) -> None:
        self.pages = pages or []
        self.fail = fail
        self.simple_pages = simple_pages or []
        self.simple_fail = simple_fail
        self.simple_calls = 0

    def extract(self, data: bytes) -> ExtractedText:
        if self.fail:
            raise ValueError("xref table is broken")
        return ExtractedText(text="\n".join(self.pages), pages=list(self.pages), page_count=len(self.pages))

    def extract_simple(self, data: bytes) -> ExtractedText:
        self.simple_calls += 1
        if self.simple_fail:
            raise ValueError("still broken")
        pages = self.simple_pages
        return ExtractedText(text="\n".join(pages), pages=list(pages), page_count=len(pages))


def test_score_text_rewards_genuine_menu_text() -> None:
    stats = score_text(MENU_TEXT, page_count=1)

    assert stats.char_count > 50
    assert stats.word_count > 10
    assert stats.confidence == pytest.approx(1.0)


def test_score_text_is_zero_for_empty_text() -> None:
    stats = score_text("   ", page_count=3)

    assert stats.char_count == 0
    assert stats.word_count == 0
    assert stats.confidence == 0.0


def test_text_pdf_is_text_bearing_with_pages() -> None:
    classifier = DocumentClassifier(StubExtractor(pages=[MENU_TEXT, "DESSERTS\nChocolate cake 7.00"]))

    doc = classifier.classify(b"%PDF-1.7 stub", PDF_MEDIA_TYPE, document_id="menu", name="menu.pdf")

    assert doc.kind is DocumentType.TEXT_PDF
    assert doc.is_text_bearing
    assert doc.confidence >= 0.3
    assert [page.page_number for page in doc.pages] == [1, 2]
    assert doc.raw_bytes_base64 is None
    assert doc.degraded_reason is None


def test_pdf_without_text_degrades_to_scanned() -> None:
    data = b"%PDF-1.7 scanned"
    classifier = DocumentClassifier(StubExtractor(pages=["", ""]))

    doc = classifier.classify(data, PDF_MEDIA_TYPE, document_id="scan", name="scan.pdf")

    assert doc.kind is DocumentType.SCANNED_PDF
    assert doc.is_image_bearing
    assert doc.text_content is None
    assert doc.confidence == 0.0
    assert base64.b64decode(doc.raw_bytes_base64 or "") == data
    assert doc.degraded_reason


def test_low_confidence_text_degrades() -> None:
    classifier = DocumentClassifier(StubExtractor(pages=["x"]), confidence_threshold=0.3)

    doc = classifier.classify(b"%PDF-1.7", PDF_MEDIA_TYPE, document_id="d", name="d.pdf")

    assert doc.is_image_bearing
    assert doc.char_count == 1


def test_failed_extraction_uses_simplified_pass() -> None:
    extractor = StubExtractor(fail=True, simple_pages=["Burger 9.99 with fries and a pickle"])
    classifier = DocumentClassifier(extractor)

    doc = classifier.classify(b"%PDF-1.4", PDF_MEDIA_TYPE, document_id="d", name="d.pdf")

    assert extractor.simple_calls == 1
    assert doc.kind is DocumentType.TEXT_PDF
    assert doc.confidence == FALLBACK_TEXT_CONFIDENCE
    assert doc.text_content == "Burger 9.99 with fries and a pickle"


def test_simplified_pass_respects_fallback_threshold() -> None:
    extractor = StubExtractor(fail=True, simple_pages=["Burger 9.99 with fries and a pickle"])
    classifier = DocumentClassifier(extractor, fallback_confidence_threshold=FALLBACK_TEXT_CONFIDENCE)

    doc = classifier.classify(b"%PDF-1.4", PDF_MEDIA_TYPE, document_id="d", name="d.pdf")

    assert doc.kind is DocumentType.SCANNED_PDF
    assert doc.is_image_bearing
    assert "not above 0.40" in (doc.degraded_reason or "")


def test_failed_simplified_pass_degrades_without_raising() -> None:
    classifier = DocumentClassifier(StubExtractor(fail=True, simple_fail=True))

    doc = classifier.classify(b"%PDF-1.4", PDF_MEDIA_TYPE, document_id="d", name="d.pdf")

    assert doc.kind is DocumentType.SCANNED_PDF
    assert doc.is_image_bearing
    assert "simplified extraction failed" in (doc.degraded_reason or "")


def test_simplified_pass_below_minimums_degrades() -> None:
    classifier = DocumentClassifier(StubExtractor(fail=True, simple_pages=["9.99"]))

    doc = classifier.classify(b"%PDF-1.4", PDF_MEDIA_TYPE, document_id="d", name="d.pdf")

    assert doc.is_image_bearing
    assert doc.confidence == 0.0


def test_image_carries_single_page_image() -> None:
    doc = classify(PNG_BYTES, "image/png", document_id="photo", name="photo.png")

    assert doc.kind is DocumentType.IMAGE
    assert doc.is_image_bearing
    assert doc.page_images == [base64.b64encode(PNG_BYTES).decode("ascii")]
    assert doc.size_bytes == len(PNG_BYTES)


def test_generic_declared_type_is_sniffed() -> None:
    doc = classify(PNG_BYTES, "application/octet-stream", document_id="photo", name="upload.bin")

    assert doc.media_type == "image/png"
    assert doc.kind is DocumentType.IMAGE


def test_csv_is_flattened_to_text() -> None:
    data = b"Name,Price\nBurger,9.99\n,\nFries,3.50\n"

    doc = classify(data, CSV_MEDIA_TYPE, document_id="sheet", name="menu.csv")

    assert doc.kind is DocumentType.SPREADSHEET
    assert doc.confidence == 1.0
    assert len(doc.sheets) == 1
    sheet = doc.sheets[0]
    assert sheet.rows == 3
    assert sheet.text.splitlines() == ["Name | Price", "Burger | 9.99", "Fries | 3.50"]
    assert doc.text_content is not None and doc.text_content.startswith("Sheet: Sheet1\n")


def test_xlsx_sheets_are_read_with_openpyxl() -> None:
    openpyxl = pytest.importorskip("openpyxl")
    workbook = openpyxl.Workbook()
    food = workbook.active
    food.title = "Food"
    food.append(["Name", "Price"])
    food.append(["Burger", "9.99"])
    drinks = workbook.create_sheet("Drinks")
    drinks.append(["Lager", "6.00"])
    buffer = BytesIO()
    workbook.save(buffer)

    doc = classify(buffer.getvalue(), XLSX_MEDIA_TYPE, document_id="book", name="menu.xlsx")

    assert doc.kind is DocumentType.SPREADSHEET
    assert [sheet.name for sheet in doc.sheets] == ["Food", "Drinks"]
    assert "Burger | 9.99" in doc.sheets[0].text
    assert "Sheet: Drinks" in (doc.text_content or "")


def test_unparseable_spreadsheet_degrades() -> None:
    class BrokenParser:
        def parse(self, data: bytes, media_type: str):
            raise ValueError("not a workbook")

    classifier = DocumentClassifier(spreadsheet_parser=BrokenParser())

    doc = classifier.classify(b"garbage", XLSX_MEDIA_TYPE, document_id="book", name="menu.xlsx")

    assert doc.is_image_bearing
    assert doc.kind is DocumentType.SPREADSHEET
    assert "not a workbook" in (doc.degraded_reason or "")


def test_unknown_media_type_degrades() -> None:
    doc = classify(b"plain words", "application/msword", document_id="doc", name="menu.doc")

    assert doc.kind is DocumentType.UNKNOWN
    assert doc.is_image_bearing
    assert doc.confidence == 0.0
