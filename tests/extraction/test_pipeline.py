from __future__ import annotations

import asyncio
import json
from typing import Dict, List, Union

import pytest
from menuscan.config import PipelineConfig
from menuscan.extraction.errors import DocumentFetchError, InvalidDocumentsError
from menuscan.extraction.pipeline import MenuExtractionPipeline, dedupe_documents, validate_documents
from menuscan.extraction.rate_limiter import RateLimiterRegistry
from menuscan.extraction.service import GenerationRequest, GenerationResult, ModelVariant, RemoteFile
from menuscan.extraction.upload_cache import UploadCache
from menuscan.ingestion.models import DocumentMeta

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

STRUCTURE = json.dumps(
    {"sections": [{"name": "Entrees", "documentLocations": [{"documentId": "photo"}], "estimatedItems": 1}]}
)
ITEMS = json.dumps([{"name": "Burger", "price": "9.99", "section": "Entrees"}])
ENRICHED = json.dumps([{"name": "Burger", "category": "Burgers", "sizes": []}])


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class StubFetcher:
    def __init__(self, payloads: Dict[str, Union[bytes, Exception]]) -> None:
        self.payloads = payloads
        self.fetched: List[str] = []

    async def fetch(self, meta: DocumentMeta) -> bytes:
        self.fetched.append(meta.id)
        payload = self.payloads[meta.id]
        if isinstance(payload, Exception):
            raise payload
        return payload


class StubService:
    def __init__(self) -> None:
        self.labels: List[str] = []
        self.uploads = 0

    async def generate(self, request: GenerationRequest, variant: ModelVariant) -> GenerationResult:
        self.labels.append(request.label)
        if request.label == "structure":
            text = STRUCTURE
        elif request.label.startswith("batch"):
            text = ITEMS
        else:
            text = ENRICHED
        return GenerationResult(text=text, input_tokens=500, output_tokens=100, model=variant.value)

    async def upload(self, data: bytes, mime_type: str, display_name: str) -> RemoteFile:
        self.uploads += 1
        return RemoteFile(uri=f"https://files.example/{display_name}", name=display_name, mime_type=mime_type)


def _meta(doc_id: str, media_type: str = "image/png") -> DocumentMeta:
    return DocumentMeta(id=doc_id, name=f"{doc_id}.png", media_type=media_type, url=f"https://cdn.example/{doc_id}")


def _pipeline(fetcher: StubFetcher, service: StubService) -> MenuExtractionPipeline:
    clock = FakeClock()
    config = PipelineConfig()
    return MenuExtractionPipeline(
        config,
        service,
        RateLimiterRegistry.create(config, clock=clock, sleep=clock.sleep),
        UploadCache(service.upload),
        fetcher=fetcher,
    )


@pytest.mark.parametrize(
    "metas",
    [
        [],
        [DocumentMeta(id="", name="menu.pdf", media_type="application/pdf", url="https://x/menu.pdf")],
        [DocumentMeta(id="menu", name="menu.pdf", media_type="application/pdf", url="  ")],
        [DocumentMeta(id="menu", name="menu.docx", media_type="application/msword", url="https://x/menu.docx")],
    ],
)
def test_validate_documents_rejects_bad_input(metas) -> None:
    with pytest.raises(InvalidDocumentsError):
        validate_documents(metas)


def test_validate_documents_accepts_generic_media_types() -> None:
    validate_documents([_meta("photo", media_type="application/octet-stream"), _meta("other", media_type="")])


def test_dedupe_keeps_first_entry() -> None:
    first = _meta("photo")
    second = first.model_copy(update={"name": "copy.png"})

    assert dedupe_documents([first, second, _meta("other")]) == [first, _meta("other")]


@pytest.mark.asyncio
async def test_duplicate_ids_are_processed_once() -> None:
    fetcher = StubFetcher({"photo": PNG_BYTES})
    service = StubService()
    pipeline = _pipeline(fetcher, service)

    outcome = await pipeline.run([_meta("photo"), _meta("photo")])
    await pipeline.shutdown()

    assert outcome.success, outcome.error
    assert fetcher.fetched == ["photo"]
    assert service.uploads == 1
    assert service.labels.count("structure") == 1
    assert any("duplicate" in warning for warning in outcome.warnings)
    assert outcome.items is not None and [item.name for item in outcome.items] == ["Burger"]
    assert outcome.processing_time_ms >= 0


@pytest.mark.asyncio
async def test_unfetchable_document_is_skipped() -> None:
    fetcher = StubFetcher({"photo": PNG_BYTES, "gone": DocumentFetchError("gone", "404 Not Found")})
    service = StubService()
    pipeline = _pipeline(fetcher, service)

    outcome = await pipeline.run([_meta("photo"), _meta("gone")])

    assert outcome.success, outcome.error
    assert any("could not be fetched" in warning for warning in outcome.warnings)
    assert any(entry.operation == "DOCUMENT_FETCH_FAILED" for entry in outcome.telemetry)


@pytest.mark.asyncio
async def test_no_fetchable_documents_fails_before_any_model_call() -> None:
    fetcher = StubFetcher({"gone": DocumentFetchError("gone", "connection refused")})
    service = StubService()
    pipeline = _pipeline(fetcher, service)

    outcome = await pipeline.run([_meta("gone")])

    assert not outcome.success
    assert outcome.items is None
    assert outcome.error_type == "document_fetch_failed"
    assert outcome.failed_phase == 0
    assert outcome.costs.total == 0
    assert service.labels == []


@pytest.mark.asyncio
async def test_invalid_input_raises_before_fetching() -> None:
    fetcher = StubFetcher({})
    pipeline = _pipeline(fetcher, StubService())

    with pytest.raises(InvalidDocumentsError):
        await pipeline.run([])

    assert fetcher.fetched == []
