from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from menuscan.extraction.errors import DocumentFetchError
from menuscan.ingestion.fetch import HttpDocumentFetcher, document_meta_for_path
from menuscan.ingestion.models import DocumentMeta


def _meta(url: str) -> DocumentMeta:
    return DocumentMeta(id="menu", name="menu.pdf", media_type="application/pdf", url=url)


@pytest.mark.asyncio
async def test_fetches_http_urls_through_transport() -> None:
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=b"%PDF-1.7 body")

    fetcher = HttpDocumentFetcher(transport=httpx.MockTransport(handler))

    data = await fetcher.fetch(_meta("https://example.com/menu.pdf"))

    assert data == b"%PDF-1.7 body"
    assert requested == ["https://example.com/menu.pdf"]


@pytest.mark.asyncio
async def test_http_errors_become_fetch_errors() -> None:
    fetcher = HttpDocumentFetcher(transport=httpx.MockTransport(lambda request: httpx.Response(404)))

    with pytest.raises(DocumentFetchError) as excinfo:
        await fetcher.fetch(_meta("https://example.com/missing.pdf"))

    assert excinfo.value.document_id == "menu"


@pytest.mark.asyncio
async def test_reads_local_paths_and_file_urls(tmp_path: Path) -> None:
    target = tmp_path / "menu.csv"
    target.write_bytes(b"Name,Price\nBurger,9.99\n")
    fetcher = HttpDocumentFetcher()

    assert await fetcher.fetch(_meta(str(target))) == target.read_bytes()
    assert await fetcher.fetch(_meta(target.as_uri())) == target.read_bytes()


@pytest.mark.asyncio
async def test_missing_file_and_unknown_scheme_raise(tmp_path: Path) -> None:
    fetcher = HttpDocumentFetcher()

    with pytest.raises(DocumentFetchError):
        await fetcher.fetch(_meta(str(tmp_path / "absent.pdf")))
    with pytest.raises(DocumentFetchError):
        await fetcher.fetch(_meta("ftp://example.com/menu.pdf"))


def test_document_meta_for_path(tmp_path: Path) -> None:
    meta = document_meta_for_path(tmp_path / "Dinner Menu.pdf")

    assert meta.id.startswith("Dinner Menu-")
    assert document_meta_for_path(tmp_path / "Dinner Menu.pdf").id == meta.id
    assert document_meta_for_path(tmp_path / "x.pdf", document_id="explicit").id == "explicit"
    assert meta.name == "Dinner Menu.pdf"
    assert meta.url.startswith("file://")
    assert meta.media_type == ""
