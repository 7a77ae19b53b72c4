"""Partition documents and items into token-bounded batches."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from ..ingestion.models import DocumentType, PreparedDocument
from .models import MenuSection, MenuStructure, RawMenuItem
from .service import IMAGE_TOKEN_ESTIMATE, ModelVariant, estimate_text_tokens

T = TypeVar("T")

SUPER_BIG_SECTION_TOKENS = 2000
LARGE_SECTION_TOKENS = 4000
DEFAULT_SECTION_TOKENS = 8000
LARGE_SECTION_ITEMS = 50
FLASH_LITE_THRESHOLD_TOKENS = 4000
LARGE_SHEET_ROWS = 50
ENRICHMENT_CONTEXT_TOKENS = 2000


@dataclass
class ExtractionBatch:
    """One phase 2 call: a slice of one document plus the sections it may contain."""

    batch_id: str
    document: PreparedDocument
    sections: List[MenuSection]
    content: str = ""
    is_image: bool = False
    tokens: int = 0
    variant: ModelVariant = ModelVariant.FLASH
    page: Optional[int] = None
    sheet: Optional[str] = None
    pages: List[int] = field(default_factory=list)

    @property
    def section_names(self) -> List[str]:
        return [section.name for section in self.sections]


def section_token_budget(section: MenuSection) -> int:
    if section.is_super_big:
        return SUPER_BIG_SECTION_TOKENS
    if section.estimated_items > LARGE_SECTION_ITEMS:
        return LARGE_SECTION_TOKENS
    return DEFAULT_SECTION_TOKENS


def variant_for_tokens(tokens: int) -> ModelVariant:
    return ModelVariant.FLASH_LITE if tokens > FLASH_LITE_THRESHOLD_TOKENS else ModelVariant.FLASH


def sections_by_document(structure: MenuStructure) -> Dict[str, List[MenuSection]]:
    mapping: Dict[str, List[MenuSection]] = {}
    for section in structure.sections:
        for location in section.document_locations:
            bucket = mapping.setdefault(location.document_id, [])
            if section not in bucket:
                bucket.append(section)
    return mapping


def _target_pages(doc: PreparedDocument, structure: MenuStructure) -> Optional[Set[int]]:
    """Pages referenced for ``doc``; ``None`` when any section references the whole document."""

    pages: Set[int] = set()
    for section in structure.sections:
        for location in section.document_locations:
            if location.document_id != doc.id:
                continue
            if not location.page_numbers:
                return None
            pages.update(location.page_numbers)
    return pages


def _target_sheets(doc: PreparedDocument, sections: Sequence[MenuSection]) -> Optional[Set[str]]:
    known = {sheet.name for sheet in doc.sheets}
    names: Set[str] = set()
    for section in sections:
        for location in section.document_locations:
            if location.document_id != doc.id:
                continue
            if not location.sheet_names:
                return None
            names.update(location.sheet_names)
    # Sheet names the model invented match nothing; fall back to every sheet.
    return names if names & known else None


def pack_lines(lines: Sequence[str], budget: int) -> List[str]:
    """Greedily join ``lines`` into chunks of at most ``budget`` estimated tokens."""

    chunks: List[str] = []
    current: List[str] = []
    current_tokens = 0
    for line in lines:
        line_tokens = estimate_text_tokens(line) + 1
        if current and current_tokens + line_tokens > budget:
            chunks.append("\n".join(current))
            current, current_tokens = [], 0
        current.append(line)
        current_tokens += line_tokens
    if current:
        chunks.append("\n".join(current))
    return chunks


def _pack_pages(pages: Sequence[Tuple[int, str]], budget: int) -> List[Tuple[List[int], str]]:
    groups: List[Tuple[List[int], str]] = []
    numbers: List[int] = []
    blocks: List[str] = []
    tokens = 0
    for number, text in pages:
        block = f"--- Page {number} ---\n{text}"
        block_tokens = estimate_text_tokens(block)
        if block_tokens > budget:
            if blocks:
                groups.append((numbers, "\n\n".join(blocks)))
                numbers, blocks, tokens = [], [], 0
            lines = [line for line in text.splitlines() if line.strip()]
            for chunk in pack_lines(lines, budget):
                groups.append(([number], f"--- Page {number} ---\n{chunk}"))
            continue
        if blocks and tokens + block_tokens > budget:
            groups.append((numbers, "\n\n".join(blocks)))
            numbers, blocks, tokens = [], [], 0
        numbers.append(number)
        blocks.append(block)
        tokens += block_tokens
    if blocks:
        groups.append((numbers, "\n\n".join(blocks)))
    return groups


def build_extraction_batches(
    structure: MenuStructure,
    documents: Sequence[PreparedDocument],
) -> Tuple[List[ExtractionBatch], List[str]]:
    """Return the phase 2 batches and the ids of documents no section references."""

    by_document = sections_by_document(structure)
    batches: List[ExtractionBatch] = []
    uncovered: List[str] = []

    def _next_id() -> str:
        return f"batch_{len(batches) + 1}"

    for doc in documents:
        sections = by_document.get(doc.id)
        if not sections:
            uncovered.append(doc.id)
            continue
        budget = min(section_token_budget(section) for section in sections)

        if doc.is_image_bearing:
            batches.append(
                ExtractionBatch(
                    batch_id=_next_id(),
                    document=doc,
                    sections=sections,
                    is_image=True,
                    tokens=IMAGE_TOKEN_ESTIMATE,
                    variant=ModelVariant.FLASH_LITE,
                )
            )
            continue

        if doc.kind is DocumentType.SPREADSHEET:
            wanted = _target_sheets(doc, sections)
            for sheet in doc.sheets:
                if not sheet.has_content or (wanted is not None and sheet.name not in wanted):
                    continue
                sheet_tokens = estimate_text_tokens(sheet.text)
                if sheet_tokens > budget and sheet.rows > LARGE_SHEET_ROWS:
                    chunks = pack_lines(sheet.text.splitlines(), budget)
                else:
                    chunks = [sheet.text]
                for chunk in chunks:
                    content = f"Sheet: {sheet.name}\n{chunk}"
                    tokens = estimate_text_tokens(content)
                    batches.append(
                        ExtractionBatch(
                            batch_id=_next_id(),
                            document=doc,
                            sections=sections,
                            content=content,
                            tokens=tokens,
                            variant=variant_for_tokens(tokens),
                            sheet=sheet.name,
                        )
                    )
            continue

        target = _target_pages(doc, structure)
        pages = [
            (page.page_number, page.text)
            for page in doc.pages
            if page.has_content and (target is None or page.page_number in target)
        ]
        if not pages and doc.text_content:
            pages = [(1, doc.text_content)]
        for numbers, content in _pack_pages(pages, budget):
            tokens = estimate_text_tokens(content)
            batches.append(
                ExtractionBatch(
                    batch_id=_next_id(),
                    document=doc,
                    sections=sections,
                    content=content,
                    tokens=tokens,
                    variant=variant_for_tokens(tokens),
                    page=numbers[0] if numbers else None,
                    pages=numbers,
                )
            )

    return batches, uncovered


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    size = max(size, 1)
    return [list(items[index:index + size]) for index in range(0, len(items), size)]


def relevant_context(
    items: Sequence[RawMenuItem],
    documents: Sequence[PreparedDocument],
    max_tokens: int = ENRICHMENT_CONTEXT_TOKENS,
) -> str:
    """Short excerpts of the source documents referenced by ``items``, bounded by ``max_tokens``."""

    by_id = {doc.id: doc for doc in documents}
    referenced: List[str] = []
    for item in items:
        if item.source.document_id not in referenced:
            referenced.append(item.source.document_id)

    context = ""
    used = 0
    for doc_id in referenced:
        doc = by_id.get(doc_id)
        if doc is None or doc.is_image_bearing:
            continue
        block = f"\n--- {doc.name} ---\n"
        if doc.kind is DocumentType.SPREADSHEET:
            sheets = {item.source.sheet for item in items if item.source.document_id == doc_id and item.source.sheet}
            for sheet in doc.sheets:
                if not sheets or sheet.name in sheets:
                    head = "\n".join(sheet.text.splitlines()[:10])
                    block += f'Sheet "{sheet.name}":\n{head}\n'
        else:
            pages = {item.source.page for item in items if item.source.document_id == doc_id and item.source.page}
            for page in doc.pages:
                if page.has_content and (not pages or page.page_number in pages):
                    block += f"Page {page.page_number}: {page.text[:500]}\n"

        block_tokens = estimate_text_tokens(block)
        if used + block_tokens > max_tokens:
            context += "\n... (additional context truncated)\n"
            break
        context += block
        used += block_tokens

    return context


def estimate_batch_count(items: int, size: int) -> int:
    return math.ceil(items / max(size, 1)) if items else 0
