"""Strict decoding of model responses into phase models.

Responses are stripped of markdown fences, parsed as JSON and validated with
pydantic. Anything that does not fit the expected shape raises
:class:`PhaseParseFailure`; fields are never silently invented. A missing price
stays ``None``.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import PhaseParseFailure
from .models import (
    FinalMenuItem,
    MenuSection,
    MenuStructure,
    ModifierGroup,
    ModifierOption,
    RawMenuItem,
    SizeOption,
    SourceInfo,
)
from .vocabulary import DEFAULT_SIZE, match_category, match_size

logger = logging.getLogger(__name__)

SIZE_MODIFIER_GROUP = "Size"

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)
_PRICE_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?|-?\.\d+")
_OPTION_PRICE_RE = re.compile(r"^(?P<name>.*?)\s*\(\s*\+?\s*\$?\s*(?P<price>\d[\d,]*(?:\.\d+)?)\s*\)\s*$")

Scalar = Union[str, float, int]


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _RawItemPayload(_Payload):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Optional[Scalar] = None
    category: Optional[str] = None
    section: Optional[str] = None
    page: Optional[int] = None
    sheet: Optional[str] = None


class _SizePayload(_Payload):
    size: Optional[str] = None
    price: Optional[Scalar] = None
    is_default: bool = False


class _OptionPayload(_Payload):
    name: str = Field(min_length=1)
    price: Optional[Scalar] = None


class _ModifierPayload(_Payload):
    name: Optional[str] = None
    options: List[Union[_OptionPayload, str]] = Field(default_factory=list)
    required: bool = False
    multi_select: bool = False


class _EnrichedItemPayload(_Payload):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    sizes: List[_SizePayload] = Field(default_factory=list)
    modifier_groups: List[_ModifierPayload] = Field(default_factory=list)


_RAW_ITEMS = TypeAdapter(List[_RawItemPayload])
_ENRICHED_ITEMS = TypeAdapter(List[_EnrichedItemPayload])


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def decode_json(text: str, phase: int) -> Any:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise PhaseParseFailure(phase, "empty response", text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise PhaseParseFailure(phase, f"invalid JSON: {exc}", text) from exc


def normalize_price(value: Optional[Scalar]) -> Optional[str]:
    """Return ``value`` as a two-decimal string, or ``None`` when no price can be read."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        raw = str(value)
    else:
        match = _PRICE_RE.search(value)
        if not match:
            return None
        raw = match.group(0).replace(",", "")
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return None
    return f"{amount.quantize(Decimal('0.01'))}"


def decode_structure(text: str) -> MenuStructure:
    """Decode the phase 1 response."""

    parsed = decode_json(text, phase=1)
    if not isinstance(parsed, dict):
        raise PhaseParseFailure(1, "expected a JSON object with a 'sections' array", text)
    sections = parsed.get("sections")
    if not isinstance(sections, list):
        raise PhaseParseFailure(1, "missing or invalid 'sections' array", text)

    normalized: List[Dict[str, Any]] = []
    for index, section in enumerate(sections, start=1):
        if not isinstance(section, dict):
            raise PhaseParseFailure(1, f"section {index} is not an object", text)
        entry = dict(section)
        entry.setdefault("order", index)
        normalized.append(entry)

    try:
        parsed_sections = TypeAdapter(List[MenuSection]).validate_python(normalized)
    except ValidationError as exc:
        raise PhaseParseFailure(1, str(exc), text) from exc

    for section in parsed_sections:
        if not section.name.strip():
            raise PhaseParseFailure(1, "section without a name", text)

    venue_signals = parsed.get("venueSignals", parsed.get("venue_signals")) or {}
    if not isinstance(venue_signals, dict):
        venue_signals = {"notes": venue_signals}
    overall = parsed.get("overallConfidence", parsed.get("overall_confidence"))

    return MenuStructure(
        sections=sorted(parsed_sections, key=lambda section: section.order),
        venue_signals=venue_signals,
        overall_confidence=float(overall) if isinstance(overall, (int, float)) else 0.8,
        total_estimated_items=sum(section.estimated_items for section in parsed_sections),
    )


def decode_raw_items(
    text: str,
    *,
    document_id: str,
    sections: Sequence[str],
    page: Optional[int] = None,
    sheet: Optional[str] = None,
) -> List[RawMenuItem]:
    """Decode a phase 2 batch response.

    Items naming a section outside ``sections`` are assigned to the first
    candidate section of the batch.
    """

    parsed = decode_json(text, phase=2)
    if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        parsed = parsed["items"]
    if not isinstance(parsed, list):
        raise PhaseParseFailure(2, "expected a JSON array of items", text)
    try:
        payloads = _RAW_ITEMS.validate_python(parsed)
    except ValidationError as exc:
        raise PhaseParseFailure(2, str(exc), text) from exc

    lookup = {name.casefold(): name for name in sections}
    default_section = sections[0] if sections else ""
    items: List[RawMenuItem] = []
    for payload in payloads:
        section = lookup.get((payload.section or "").casefold(), default_section)
        items.append(
            RawMenuItem(
                name=payload.name,
                description=payload.description or "",
                price=normalize_price(payload.price),
                category=payload.category or "",
                section=section,
                source=SourceInfo(
                    document_id=document_id,
                    page=payload.page if payload.page is not None else page,
                    sheet=payload.sheet or sheet,
                ),
            )
        )
    return items


def decode_enriched_items(text: str) -> List[_EnrichedItemPayload]:
    """Decode a phase 3 batch response into validated payloads."""

    parsed = decode_json(text, phase=3)
    if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        parsed = parsed["items"]
    if not isinstance(parsed, list):
        raise PhaseParseFailure(3, "expected a JSON array of items", text)
    try:
        return _ENRICHED_ITEMS.validate_python(parsed)
    except ValidationError as exc:
        raise PhaseParseFailure(3, str(exc), text) from exc


def resolve_category(candidates: Sequence[Optional[str]], fallback: str) -> str:
    """First candidate found in the category vocabulary, else ``fallback``.

    ``fallback`` must itself be a vocabulary category.
    """

    for candidate in candidates:
        matched = match_category(candidate)
        if matched:
            return matched
    resolved = match_category(fallback)
    if resolved is None:
        raise ValueError(f"Fallback category {fallback!r} is not an allowed category")
    return resolved


def _parse_option(option: Union[_OptionPayload, str]) -> ModifierOption:
    if isinstance(option, _OptionPayload):
        return ModifierOption(name=option.name, price=normalize_price(option.price))
    match = _OPTION_PRICE_RE.match(option.strip())
    if match:
        return ModifierOption(name=match.group("name").strip(), price=normalize_price(match.group("price")))
    return ModifierOption(name=option.strip())


def _split_sizes(sizes: Sequence[_SizePayload]) -> Tuple[List[SizeOption], List[ModifierOption]]:
    valid: List[SizeOption] = []
    overflow: List[ModifierOption] = []
    seen = set()
    for entry in sizes:
        label = (entry.size or "").strip()
        price = normalize_price(entry.price)
        canonical = match_size(label) if label else DEFAULT_SIZE
        if canonical is None:
            overflow.append(ModifierOption(name=label, price=price))
            continue
        if canonical in seen:
            continue
        seen.add(canonical)
        valid.append(SizeOption(size=canonical, price=price, is_default=entry.is_default))
    return valid, overflow


def _ensure_single_default(sizes: List[SizeOption]) -> List[SizeOption]:
    default_index = next((index for index, size in enumerate(sizes) if size.is_default), 0)
    return [size.model_copy(update={"is_default": index == default_index}) for index, size in enumerate(sizes)]


def default_sizes(price: Optional[str]) -> List[SizeOption]:
    return [SizeOption(size=DEFAULT_SIZE, price=price, is_default=True)]


def finalize_item(
    raw: RawMenuItem,
    enriched: Optional[_EnrichedItemPayload],
    *,
    fallback_category: str,
) -> FinalMenuItem:
    """Merge a raw item with its enrichment, enforcing the size and category vocabularies.

    Sizes outside the vocabulary become options of a ``Size`` modifier group.
    """

    if enriched is None:
        return FinalMenuItem(
            name=raw.name,
            description=raw.description,
            category=resolve_category([raw.category, raw.section], fallback_category),
            section=raw.section,
            sizes=default_sizes(raw.price),
            modifier_groups=[],
            source=raw.source,
        )

    sizes, overflow = _split_sizes(enriched.sizes)
    groups: List[ModifierGroup] = []
    if overflow:
        groups.append(ModifierGroup(name=SIZE_MODIFIER_GROUP, options=overflow, required=not sizes, multi_select=False))
    for group in enriched.modifier_groups:
        options = [_parse_option(option) for option in group.options]
        if not options:
            continue
        groups.append(
            ModifierGroup(
                name=(group.name or "Options").strip() or "Options",
                options=options,
                required=group.required,
                multi_select=group.multi_select,
            )
        )

    if not sizes:
        sizes = default_sizes(raw.price)
    sizes = _ensure_single_default(sizes)
    if raw.price is not None:
        # an unpriced lone or default size keeps the price extracted in phase 2
        sizes = [
            size.model_copy(update={"price": raw.price})
            if size.price is None and (size.is_default or len(sizes) == 1)
            else size
            for size in sizes
        ]

    return FinalMenuItem(
        name=raw.name,
        description=(enriched.description if enriched.description is not None else raw.description),
        category=resolve_category([enriched.category, raw.category, raw.section], fallback_category),
        section=raw.section,
        sizes=sizes,
        modifier_groups=groups,
        source=raw.source,
    )


def normalize_name(name: str) -> str:
    return " ".join(name.casefold().split())


def merge_enrichment(
    raw_items: Sequence[RawMenuItem],
    enriched: Sequence[_EnrichedItemPayload],
    *,
    fallback_category: str,
) -> Tuple[List[FinalMenuItem], int]:
    """Pair raw items with enriched payloads by name, preserving raw order.

    Returns the final items and the number of enriched payloads that matched no raw item.
    """

    pool: Dict[str, List[_EnrichedItemPayload]] = {}
    for payload in enriched:
        pool.setdefault(normalize_name(payload.name), []).append(payload)

    final: List[FinalMenuItem] = []
    for raw in raw_items:
        candidates = pool.get(normalize_name(raw.name))
        match = candidates.pop(0) if candidates else None
        final.append(finalize_item(raw, match, fallback_category=fallback_category))

    unmatched = sum(len(rest) for rest in pool.values())
    if unmatched:
        logger.debug("Ignoring %s enriched items with no matching raw item", unmatched)
    return final, unmatched
