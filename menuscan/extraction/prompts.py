"""Prompt templates for the three extraction phases."""

from __future__ import annotations

import json
from typing import Iterable, List, Sequence

from ..ingestion.models import DocumentType, PreparedDocument
from .models import MenuSection, RawMenuItem
from .vocabulary import ALLOWED_CATEGORIES, ALLOWED_SIZES, COMMON_MODIFIER_GROUPS

_CATEGORIES = ", ".join(ALLOWED_CATEGORIES)
_SIZES = ", ".join(ALLOWED_SIZES)

STRUCTURE_SYSTEM_INSTRUCTION = f"""You are a menu analysis expert. Analyze the menu document(s) and return ONLY valid JSON.

TASK: Identify the menu sections in the provided document(s) and any signals about the venue.

AVAILABLE CATEGORIES: {_CATEGORIES}

RESPONSE FORMAT (no commentary, no markdown):
{{
  "sections": [
    {{
      "name": "Appetizers",
      "order": 1,
      "documentLocations": [
        {{"documentId": "USE_ACTUAL_DOCUMENT_ID", "pageNumbers": [1, 2], "sheetNames": ["Menu"]}}
      ],
      "description": "Starter dishes and small plates",
      "estimatedItems": 15,
      "isSuperBig": false,
      "confidence": 0.95
    }}
  ],
  "venueSignals": {{"venueType": "bar and grill", "cuisine": "American", "currency": "USD"}},
  "overallConfidence": 0.9
}}

Mark a section isSuperBig when it holds more than 100 items.
Use the exact documentId values from the DOCUMENT REFERENCE INFO, never placeholders."""

EXTRACTION_SYSTEM_INSTRUCTION = f"""You are an expert menu manager extracting menu items. Return ONLY a JSON array.

PREDEFINED CATEGORIES (use exact names): {_CATEGORIES}

EXTRACTION RULES:
1. Extract item name, description, price, category and section.
2. Use only predefined categories; choose the best match.
3. Keep size and add-on wording in the description; do not create size or modifier fields.
4. Use null for price when no price is visible. Never invent a price.
5. Ignore section headers and text that is not a menu item.
6. Set "section" to one of the candidate sections listed in the request.

Item format:
{{"name": "Caesar Salad", "description": "Romaine, parmesan, croutons. Small or large.", "price": "12.99", "category": "Salads", "section": "Salads", "page": 1}}"""

ENRICHMENT_SYSTEM_INSTRUCTION = f"""You are an expert menu consultant. Structure sizes and modifiers of raw menu items. Return ONLY a JSON array.

PREDEFINED CATEGORIES (use exact names): {_CATEGORIES}
PREDEFINED SIZES (use exact names): {_SIZES}
COMMON MODIFIER GROUPS: {", ".join(COMMON_MODIFIER_GROUPS)}

SIZE RULES:
- Extract sizes mentioned in descriptions and use only predefined sizes.
- Give each size its price when mentioned; use null when unknown.
- When no sizes are mentioned, return an empty "sizes" array.

MODIFIER RULES:
- Look for choices like "choose X, Y, Z" or "add X for $Y".
- Group related options (all toppings together, all sides together).
- Mark each group required or optional and single or multi select.

Keep every item's "name" exactly as given. Item format:
{{"name": "Caesar Salad", "description": "Romaine, parmesan, croutons", "category": "Salads",
  "sizes": [{{"size": "Regular", "price": "9.99", "isDefault": true}}, {{"size": "Large", "price": "12.99", "isDefault": false}}],
  "modifierGroups": [{{"name": "Add Protein", "options": [{{"name": "Grilled Chicken", "price": "5.00"}}], "required": false, "multiSelect": false}}]}}"""


def describe_document(doc: PreparedDocument) -> str:
    if doc.kind is DocumentType.SPREADSHEET and doc.sheets:
        sheets = ", ".join(f'"{sheet.name}"' for sheet in doc.sheets)
        return f'Document "{doc.id}" ({doc.name}): Spreadsheet with sheets {sheets}'
    if doc.kind is DocumentType.TEXT_PDF and doc.pages:
        pages = ", ".join(str(page.page_number) for page in doc.pages)
        return f'Document "{doc.id}" ({doc.name}): PDF with pages {pages}'
    if doc.kind is DocumentType.SCANNED_PDF:
        return f'Document "{doc.id}" ({doc.name}): scanned PDF, attached as a file'
    if doc.kind is DocumentType.IMAGE:
        return f'Document "{doc.id}" ({doc.name}): image file, attached'
    return f'Document "{doc.id}" ({doc.name}): {doc.media_type}'


def structure_message(documents: Iterable[PreparedDocument]) -> str:
    info = "\n".join(describe_document(doc) for doc in documents)
    return (
        "DOCUMENT REFERENCE INFO:\n"
        f"{info}\n\n"
        "Please analyze these menu documents and identify all menu sections."
    )


def document_text_block(doc: PreparedDocument) -> str:
    if doc.kind is DocumentType.TEXT_PDF and doc.pages:
        body = "\n\n".join(f"--- Page {page.page_number} ---\n{page.text}" for page in doc.pages if page.has_content)
    else:
        body = doc.text_content or ""
    return f'=== Document "{doc.id}" ({doc.name}) ===\n{body}'


def extraction_prompt(sections: Sequence[MenuSection], all_sections: Sequence[str], is_image: bool) -> str:
    candidates = "\n".join(
        f"- {section.name}" + (f": {section.description}" if section.description else "") for section in sections
    )
    context = f"The full menu has these sections: {', '.join(all_sections)}.\n" if len(all_sections) > 1 else ""
    source = "Analyze the attached menu file." if is_image else "Menu content follows."
    return (
        f"{context}"
        "Extract every menu item belonging to these candidate sections:\n"
        f"{candidates}\n\n"
        f"{source}"
    )


def enrichment_prompt(items: Sequence[RawMenuItem], context: str) -> str:
    payload: List[dict] = [
        {
            "name": item.name,
            "description": item.description,
            "price": item.price,
            "category": item.category,
            "section": item.section,
        }
        for item in items
    ]
    return (
        "Raw menu items to structure:\n"
        f"{json.dumps(payload, indent=2, ensure_ascii=False)}\n\n"
        "Original document context:\n"
        f"{context or '(none)'}"
    )
