from __future__ import annotations

from menuscan.extraction.batching import (
    build_extraction_batches,
    chunked,
    pack_lines,
    relevant_context,
    section_token_budget,
    variant_for_tokens,
)
from menuscan.extraction.models import DocumentLocation, MenuSection, MenuStructure, RawMenuItem, SourceInfo
from menuscan.extraction.service import ModelVariant
from menuscan.ingestion.models import DocumentType, PreparedDocument, PreparedPage, PreparedSheet


def _section(name: str, locations, **kwargs) -> MenuSection:
    return MenuSection(name=name, document_locations=locations, **kwargs)


def _text_pdf(doc_id: str, pages) -> PreparedDocument:
    return PreparedDocument(
        id=doc_id,
        name=f"{doc_id}.pdf",
        media_type="application/pdf",
        kind=DocumentType.TEXT_PDF,
        text_content="\n".join(pages),
        pages=[PreparedPage(page_number=index, text=text) for index, text in enumerate(pages, start=1)],
        page_count=len(pages),
    )


def test_token_budgets_and_variants() -> None:
    assert section_token_budget(MenuSection(name="A", is_super_big=True)) == 2000
    assert section_token_budget(MenuSection(name="A", estimated_items=51)) == 4000
    assert section_token_budget(MenuSection(name="A", estimated_items=20)) == 8000
    assert variant_for_tokens(4001) is ModelVariant.FLASH_LITE
    assert variant_for_tokens(4000) is ModelVariant.FLASH


def test_one_batch_per_document_chunk_with_all_candidate_sections() -> None:
    doc = _text_pdf("menu", ["Burger 9.99", "Cake 5.00"])
    structure = MenuStructure(
        sections=[
            _section("Entrees", [DocumentLocation(document_id="menu", page_numbers=[1])]),
            _section("Desserts", [DocumentLocation(document_id="menu", page_numbers=[2])]),
        ]
    )

    batches, uncovered = build_extraction_batches(structure, [doc])

    assert uncovered == []
    assert len(batches) == 1
    batch = batches[0]
    assert batch.section_names == ["Entrees", "Desserts"]
    assert batch.pages == [1, 2]
    assert "--- Page 2 ---" in batch.content
    assert batch.variant is ModelVariant.FLASH


def test_pages_outside_locations_are_skipped() -> None:
    doc = _text_pdf("menu", ["Burger 9.99", "Wine list", "Cake 5.00"])
    structure = MenuStructure(sections=[_section("Entrees", [DocumentLocation(document_id="menu", page_numbers=[1, 3])])])

    batches, _ = build_extraction_batches(structure, [doc])

    assert batches[0].pages == [1, 3]
    assert "Wine list" not in batches[0].content


def test_large_pages_split_under_budget() -> None:
    lines = [f"Item number {index} with a fairly long description and price {index}.99" for index in range(400)]
    doc = _text_pdf("menu", ["\n".join(lines)])
    structure = MenuStructure(
        sections=[_section("Entrees", [DocumentLocation(document_id="menu")], is_super_big=True, estimated_items=400)]
    )

    batches, _ = build_extraction_batches(structure, [doc])

    assert len(batches) > 1
    assert all(batch.tokens <= 2100 for batch in batches)
    assert len({batch.batch_id for batch in batches}) == len(batches)


def test_image_documents_become_flash_lite_file_batches() -> None:
    doc = PreparedDocument(
        id="photo",
        name="photo.jpg",
        media_type="image/jpeg",
        kind=DocumentType.IMAGE,
        raw_bytes_base64="AAAA",
        page_images=["AAAA"],
    )
    orphan = _text_pdf("orphan", ["Unreferenced text"])
    structure = MenuStructure(sections=[_section("Drinks", [DocumentLocation(document_id="photo")])])

    batches, uncovered = build_extraction_batches(structure, [doc, orphan])

    assert uncovered == ["orphan"]
    assert len(batches) == 1
    assert batches[0].is_image
    assert batches[0].variant is ModelVariant.FLASH_LITE


def test_spreadsheets_batch_per_referenced_sheet() -> None:
    doc = PreparedDocument(
        id="book",
        name="menu.xlsx",
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        kind=DocumentType.SPREADSHEET,
        text_content="...",
        sheets=[
            PreparedSheet(name="Food", text="Burger | 9.99", rows=1),
            PreparedSheet(name="Drinks", text="Lager | 6.00", rows=1),
            PreparedSheet(name="Notes", text="", rows=0),
        ],
    )
    only_food = MenuStructure(sections=[_section("Entrees", [DocumentLocation(document_id="book", sheet_names=["Food"])])])
    invented = MenuStructure(sections=[_section("Entrees", [DocumentLocation(document_id="book", sheet_names=["Menu"])])])

    food_batches, _ = build_extraction_batches(only_food, [doc])
    all_batches, _ = build_extraction_batches(invented, [doc])

    assert [batch.sheet for batch in food_batches] == ["Food"]
    assert food_batches[0].content.startswith("Sheet: Food\n")
    assert [batch.sheet for batch in all_batches] == ["Food", "Drinks"]


def test_pack_lines_and_chunked() -> None:
    chunks = pack_lines(["a" * 40, "b" * 40, "c" * 40], budget=22)

    assert chunks == ["a" * 40 + "\n" + "b" * 40, "c" * 40]
    assert chunked(list(range(7)), 3) == [[0, 1, 2], [3, 4, 5], [6]]


def test_relevant_context_is_bounded() -> None:
    doc = _text_pdf("menu", ["Burger with cheddar 9.99", "x" * 4000])
    items = [
        RawMenuItem(name="Burger", section="Entrees", source=SourceInfo(document_id="menu", page=1)),
        RawMenuItem(name="Ghost", section="Entrees", source=SourceInfo(document_id="missing")),
    ]

    context = relevant_context(items, [doc], max_tokens=2000)

    assert "Page 1: Burger with cheddar 9.99" in context
    assert "Page 2" not in context
