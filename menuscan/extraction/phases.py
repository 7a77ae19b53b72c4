"""The three extraction phases: structure discovery, item extraction, enrichment."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from ..config import PipelineConfig
from ..ingestion.models import DocumentType, PreparedDocument
from .batching import (
    ExtractionBatch,
    build_extraction_batches,
    chunked,
    estimate_batch_count,
    relevant_context,
)
from .decoding import decode_enriched_items, decode_raw_items, decode_structure, merge_enrichment
from .errors import ExternalServiceError, MenuscanError
from .ledger import TelemetryLedger
from .models import DocumentLocation, FinalMenuItem, MenuSection, MenuStructure, RawMenuItem
from .prompts import (
    ENRICHMENT_SYSTEM_INSTRUCTION,
    EXTRACTION_SYSTEM_INSTRUCTION,
    STRUCTURE_SYSTEM_INSTRUCTION,
    document_text_block,
    enrichment_prompt,
    extraction_prompt,
    structure_message,
)
from .rate_limiter import RateLimiterRegistry
from .service import GenerationRequest, GenerationResult, GenerationService, ModelVariant, RequestPart
from .upload_cache import UploadCache
from .vocabulary import ALLOWED_CATEGORIES, ALLOWED_SIZES

logger = logging.getLogger(__name__)

FALLBACK_SECTION_NAME = "Menu Items"


@dataclass
class PhaseContext:
    """Collaborators shared by every phase of one run."""

    service: GenerationService
    limiters: RateLimiterRegistry
    uploads: UploadCache
    ledger: TelemetryLedger
    config: PipelineConfig
    warnings: List[str] = field(default_factory=list)

    def warn(self, phase: int, operation: str, message: str) -> None:
        self.warnings.append(message)
        self.ledger.warn(phase, operation, message)


async def call_model(
    ctx: PhaseContext,
    phase: int,
    variant: ModelVariant,
    request: GenerationRequest,
    *,
    batch_id: Optional[str] = None,
    document_ids: Iterable[str] = (),
    images: int = 0,
) -> GenerationResult:
    """Run ``request`` through the variant's rate limiter and record its cost."""

    limiter = ctx.limiters.get(variant)
    ctx.ledger.debug(
        phase,
        "API_CALL_START",
        f"{limiter.name}" + (f" ({batch_id})" if batch_id else ""),
        data={"estimated_tokens": request.estimated_tokens},
    )
    try:
        result = await limiter.schedule(lambda: ctx.service.generate(request, variant))
    except ExternalServiceError as exc:
        exc.phase = phase
        ctx.ledger.error(phase, "API_CALL_FAILED", str(exc), data={"batch_id": batch_id})
        raise
    except MenuscanError:
        raise
    except Exception as exc:
        ctx.ledger.error(phase, "API_CALL_FAILED", str(exc), data={"batch_id": batch_id})
        raise ExternalServiceError(str(exc), phase=phase, model=limiter.name) from exc

    ctx.ledger.record_call(
        phase,
        variant,
        result.model or limiter.name,
        result.input_tokens,
        result.output_tokens,
        images=images,
        batch_id=batch_id,
        document_ids=document_ids,
    )
    return result


def _is_visual(doc: PreparedDocument) -> bool:
    return doc.media_type == "application/pdf" or doc.media_type.startswith("image/")


def readable_documents(documents: Sequence[PreparedDocument]) -> List[PreparedDocument]:
    """Documents with either text or a form the model can read visually."""

    return [doc for doc in documents if doc.is_text_bearing or _is_visual(doc)]


def ensure_spreadsheet_coverage(
    structure: MenuStructure,
    documents: Sequence[PreparedDocument],
    ctx: Optional[PhaseContext] = None,
) -> MenuStructure:
    """Add a fallback section for spreadsheets no discovered section references."""

    covered = {location.document_id for section in structure.sections for location in section.document_locations}
    missing = [doc for doc in documents if doc.kind is DocumentType.SPREADSHEET and doc.id not in covered]
    if not missing:
        return structure

    fallback = MenuSection(
        name=FALLBACK_SECTION_NAME,
        order=len(structure.sections) + 1,
        description="Menu items from spreadsheet data",
        document_locations=[
            DocumentLocation(document_id=doc.id, sheet_names=[sheet.name for sheet in doc.sheets] or None)
            for doc in missing
        ],
        estimated_items=sum(max(sum(max(1, sheet.rows - 1) for sheet in doc.sheets), 1) for doc in missing),
        is_super_big=False,
        confidence=0.8,
    )
    if ctx is not None:
        ctx.warn(1, "SPREADSHEET_FALLBACK_SECTION", f"{len(missing)} spreadsheet(s) were not covered by any section")
    return structure.model_copy(
        update={
            "sections": [*structure.sections, fallback],
            "total_estimated_items": structure.total_estimated_items + fallback.estimated_items,
        }
    )


def validate_structure(structure: MenuStructure) -> List[str]:
    warnings: List[str] = []
    if not structure.sections:
        warnings.append("No menu sections found - extraction may fail")
    low = [section for section in structure.sections if section.confidence < 0.5]
    if low:
        warnings.append(f"{len(low)} sections have low confidence")
    huge = [section for section in structure.sections if section.estimated_items > 500]
    if huge:
        warnings.append(f"{len(huge)} sections are extremely large (>500 items)")
    if structure.overall_confidence < 0.6:
        warnings.append("Overall structure confidence is low")
    if structure.total_estimated_items > 2000:
        warnings.append(f"Very large menu ({structure.total_estimated_items} estimated items)")
    return warnings


def validate_extraction(items: Sequence[RawMenuItem], structure: MenuStructure) -> List[str]:
    warnings: List[str] = []
    if not items:
        return ["No items extracted from any section"]
    if structure.total_estimated_items > 0:
        rate = len(items) / structure.total_estimated_items
        if rate < 0.3:
            warnings.append(f"Low extraction rate: {round(rate * 100)}% of estimated items")
    with_items = {item.section for item in items}
    missing = [section.name for section in structure.sections if section.name not in with_items]
    if missing:
        warnings.append(f"{len(missing)} sections had no items extracted")
    unpriced = [item for item in items if item.price is None]
    if len(unpriced) > len(items) * 0.5:
        warnings.append(f"{round(len(unpriced) / len(items) * 100)}% of items have no price")
    return warnings


def validate_enrichment(items: Sequence[FinalMenuItem]) -> List[str]:
    if not items:
        return ["No items after enrichment"]
    warnings: List[str] = []
    invalid_categories = [item for item in items if item.category not in ALLOWED_CATEGORIES]
    if invalid_categories:
        warnings.append(f"{len(invalid_categories)} items have invalid categories")
    invalid_sizes = [size for item in items for size in item.sizes if size.size not in ALLOWED_SIZES]
    if invalid_sizes:
        warnings.append(f"{len(invalid_sizes)} size options use invalid sizes")
    enriched = [item for item in items if len(item.sizes) > 1 or item.modifier_groups]
    rate = len(enriched) / len(items)
    if rate < 0.1:
        warnings.append(f"Low enrichment rate: only {round(rate * 100)}% of items were enhanced")
    return warnings


async def discover_structure(ctx: PhaseContext, documents: Sequence[PreparedDocument]) -> MenuStructure:
    """Phase 1: one high-capability call over every document."""

    readable = readable_documents(documents)
    for doc in documents:
        if doc not in readable:
            ctx.warn(1, "DOCUMENT_UNREADABLE", f"Document {doc.id} has neither text nor a visual form; skipped")
    documents = readable
    visual = [doc for doc in documents if doc.is_image_bearing]

    handles = await ctx.uploads.submit_all(visual)

    parts = [RequestPart.from_text(structure_message(documents))]
    for doc in documents:
        if doc.is_text_bearing:
            parts.append(RequestPart.from_text(document_text_block(doc)))
        elif doc.id in handles:
            handle = handles[doc.id]
            parts.append(RequestPart.from_file(handle.remote_uri, handle.mime_type))

    request = GenerationRequest(parts=parts, system_instruction=STRUCTURE_SYSTEM_INSTRUCTION, label="structure")
    result = await call_model(
        ctx,
        1,
        ModelVariant.PRO,
        request,
        batch_id="structure",
        document_ids=[doc.id for doc in documents],
    )
    structure = decode_structure(result.text)
    structure = ensure_spreadsheet_coverage(structure, documents, ctx)

    for warning in validate_structure(structure):
        ctx.warn(1, "STRUCTURE_WARNING", warning)

    summary = ", ".join(f"{section.name} ({section.estimated_items})" for section in structure.sections)
    ctx.ledger.success(1, "STRUCTURE_ANALYZED", f"Found {len(structure.sections)} sections: {summary}")
    return structure


async def _run_extraction_batch(
    ctx: PhaseContext,
    batch: ExtractionBatch,
    all_sections: Sequence[str],
) -> List[RawMenuItem]:
    prompt = extraction_prompt(batch.sections, all_sections, batch.is_image)
    if batch.is_image:
        handle = await ctx.uploads.submit(batch.document)
        parts = [RequestPart.from_file(handle.remote_uri, handle.mime_type), RequestPart.from_text(prompt)]
    else:
        parts = [RequestPart.from_text(f"{prompt}\n\nContent to extract from:\n{batch.content}")]

    request = GenerationRequest(
        parts=parts,
        system_instruction=EXTRACTION_SYSTEM_INSTRUCTION,
        image_count=1 if batch.is_image else 0,
        label=batch.batch_id,
    )
    result = await call_model(
        ctx,
        2,
        batch.variant,
        request,
        batch_id=batch.batch_id,
        document_ids=[batch.document.id],
        images=request.image_count,
    )
    items = decode_raw_items(
        result.text,
        document_id=batch.document.id,
        sections=batch.section_names,
        page=batch.page,
        sheet=batch.sheet,
    )
    ctx.ledger.debug(2, "BATCH_COMPLETE", f"{batch.batch_id}: {len(items)} items")
    return items


async def extract_items(
    ctx: PhaseContext,
    structure: MenuStructure,
    documents: Sequence[PreparedDocument],
) -> List[RawMenuItem]:
    """Phase 2: concurrent batches paced by the per-variant rate limiters.

    Every batch settles before the phase reports; the first failure then fails the phase.
    """

    documents = readable_documents(documents)
    known = {doc.id for doc in documents}
    for section in structure.sections:
        for location in section.document_locations:
            if location.document_id not in known:
                ctx.warn(2, "DOCUMENT_NOT_FOUND", f"Section {section.name!r} references unknown document {location.document_id}")

    batches, uncovered = build_extraction_batches(structure, documents)
    for doc_id in uncovered:
        ctx.warn(2, "DOCUMENT_UNCOVERED", f"No section references document {doc_id}")

    variants = sorted({batch.variant.value for batch in batches})
    ctx.ledger.debug(2, "BATCHES_CREATED", f"{len(batches)} batches, models: {', '.join(variants) or 'none'}")

    all_sections = structure.section_names()
    results = await asyncio.gather(
        *(_run_extraction_batch(ctx, batch, all_sections) for batch in batches),
        return_exceptions=True,
    )

    items: List[RawMenuItem] = []
    failures: List[BaseException] = []
    for batch, result in zip(batches, results):
        if isinstance(result, BaseException):
            ctx.ledger.error(2, "BATCH_EXTRACTION_FAILED", f"{batch.batch_id}: {result}")
            failures.append(result)
            continue
        items.extend(result)
    if failures:
        raise failures[0]

    for warning in validate_extraction(items, structure):
        ctx.warn(2, "EXTRACTION_WARNING", warning)

    counts = ", ".join(
        f"{name}: {sum(1 for item in items if item.section == name)}" for name in all_sections
    )
    ctx.ledger.success(2, "EXTRACTION_COMPLETE", f"{len(items)} items extracted. {counts}")
    return items


async def _run_enrichment_batch(
    ctx: PhaseContext,
    index: int,
    batch: Sequence[RawMenuItem],
    documents: Sequence[PreparedDocument],
) -> List[FinalMenuItem]:
    context = relevant_context(batch, documents)
    request = GenerationRequest(
        parts=[RequestPart.from_text(enrichment_prompt(batch, context))],
        system_instruction=ENRICHMENT_SYSTEM_INSTRUCTION,
        label=f"enrichment_{index}",
    )
    result = await call_model(
        ctx,
        3,
        ModelVariant.PRO,
        request,
        batch_id=f"enrichment_{index}",
        document_ids=sorted({item.source.document_id for item in batch}),
    )
    enriched = decode_enriched_items(result.text)
    final, unmatched = merge_enrichment(batch, enriched, fallback_category=ctx.config.fallback_category)
    if unmatched:
        ctx.ledger.debug(3, "ENRICHMENT_UNMATCHED", f"enrichment_{index}: {unmatched} returned items matched nothing")
    return final


async def enrich_items(
    ctx: PhaseContext,
    raw_items: Sequence[RawMenuItem],
    documents: Sequence[PreparedDocument],
) -> List[FinalMenuItem]:
    """Phase 3: attach sizes and modifier groups; unmatched items pass through with a default size."""

    if not raw_items:
        ctx.warn(3, "NO_ITEMS_TO_ENRICH", "No raw items provided for enrichment")
        return []

    size = ctx.config.enrichment_batch_size
    batches = chunked(list(raw_items), size)
    ctx.ledger.debug(
        3,
        "ENRICHMENT_START",
        f"{len(raw_items)} items in {estimate_batch_count(len(raw_items), size)} batches",
    )

    results = await asyncio.gather(
        *(_run_enrichment_batch(ctx, index, batch, documents) for index, batch in enumerate(batches, start=1)),
        return_exceptions=True,
    )

    final: List[FinalMenuItem] = []
    failures: List[BaseException] = []
    for index, result in enumerate(results, start=1):
        if isinstance(result, BaseException):
            ctx.ledger.error(3, "BATCH_ENRICHMENT_FAILED", f"enrichment_{index}: {result}")
            failures.append(result)
            continue
        final.extend(result)
    if failures:
        raise failures[0]

    for warning in validate_enrichment(final):
        ctx.warn(3, "ENRICHMENT_WARNING", warning)

    sizes = sum(len(item.sizes) for item in final)
    groups = sum(len(item.modifier_groups) for item in final)
    ctx.ledger.success(3, "ENRICHMENT_COMPLETE", f"{len(final)} items, {sizes} sizes, {groups} modifier groups")
    return final
