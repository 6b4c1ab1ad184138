from __future__ import annotations

import httpx
import pytest

from shelfwise.catalog.client import CatalogClient, parse_catalog
from shelfwise.catalog.credentials import Credential
from shelfwise.catalog.models import SearchDescriptor
from shelfwise.settings import CatalogSettings

ATOM_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Search Results</title>
  <entry>
    <id>urn:book:1</id>
    <title>Dune</title>
    <link rel="http://opds-spec.org/acquisition" href="/books/1.epub" type="application/epub+zip"/>
  </entry>
</feed>"""

OPENSEARCH = """<OpenSearchDescription xmlns="http://a9.com/-/spec/opensearch/1.1/">
  <Url type="application/atom+xml;profile=opds-catalog" template="/search?q={searchTerms}"/>
</OpenSearchDescription>"""


def _client(handler, **settings):
    settings.setdefault("skip_cors_check", True)
    return CatalogClient(settings=CatalogSettings(**settings), transport=httpx.MockTransport(handler))


def test_parse_catalog_detects_the_format() -> None:
    json_feed = parse_catalog('{"metadata": {"title": "Two"}, "publications": []}', "https://x.example/")
    atom_feed = parse_catalog(ATOM_FEED, "https://x.example/", content_type="application/octet-stream")

    assert json_feed.version == "2"
    assert atom_feed.version == "1"
    assert atom_feed.books[0].title == "Dune"


@pytest.mark.asyncio
async def test_load_catalog_returns_a_normalized_feed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "opds" in request.headers["Accept"]
        return httpx.Response(200, headers={"Content-Type": "application/atom+xml"}, text=ATOM_FEED)

    result = await _client(handler).load_catalog("https://lib.example.org/opds")

    assert result.success
    payload = result.to_dict()
    assert payload["data"]["books"][0]["downloadUrl"] == "https://lib.example.org/books/1.epub"


@pytest.mark.asyncio
async def test_load_catalog_reports_http_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    result = await _client(handler).load_catalog("https://lib.example.org/opds")

    assert result.to_dict() == {
        "success": False,
        "error": "Catalog requires authentication (401)",
        "status": 401,
    }


@pytest.mark.asyncio
async def test_load_catalog_reports_parse_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Type": "application/atom+xml"}, text="<feed><entry>")

    result = await _client(handler).load_catalog("https://lib.example.org/opds")

    assert not result.success
    assert "Unable to parse OPDS feed" in result.error


@pytest.mark.asyncio
async def test_catalog_credentials_are_refused_through_the_public_proxy() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler, skip_cors_check=False, force_proxy=True)

    result = await client.load_catalog("https://lib.example.org/opds", credential=Credential("reader", "secret"))

    assert not result.success
    assert "public CORS proxy" in result.error


@pytest.mark.asyncio
async def test_search_with_an_opensearch_description() -> None:
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.path == "/osd.xml":
            return httpx.Response(200, headers={"Content-Type": "application/opensearchdescription+xml"}, text=OPENSEARCH)
        return httpx.Response(200, headers={"Content-Type": "application/atom+xml"}, text=ATOM_FEED)

    descriptor = SearchDescriptor(description_url="https://lib.example.org/osd.xml")

    feed = await _client(handler).search(descriptor, "dune")

    assert requested == ["https://lib.example.org/osd.xml", "https://lib.example.org/search?q=dune"]
    assert feed.books[0].title == "Dune"


@pytest.mark.asyncio
async def test_search_with_a_templated_link() -> None:
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, headers={"Content-Type": "application/opds+json"}, json={"publications": []})

    descriptor = SearchDescriptor(description_url="https://lib.example.org/search{?query}")

    feed = await _client(handler).search(descriptor, "space opera")

    assert requested == ["https://lib.example.org/search?query=space%20opera"]
    assert feed.books == []


@pytest.mark.asyncio
async def test_unchanged_feed_is_revalidated_with_its_etag() -> None:
    seen = []
    body = '{"metadata": {"title": "Shelf"}, "publications": []}'

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("If-None-Match"))
        if request.headers.get("If-None-Match") == '"v1"':
            return httpx.Response(304)
        return httpx.Response(200, headers={"Content-Type": "application/opds+json", "ETag": '"v1"'}, text=body)

    client = _client(handler)

    first = await client.fetch_feed("https://lib.example.org/opds2")
    second = await client.fetch_feed("https://lib.example.org/opds2")

    assert seen == [None, '"v1"']
    assert second is first
    assert second.title == "Shelf"

    client.clear_etag_cache()
    await client.fetch_feed("https://lib.example.org/opds2")

    assert seen[-1] is None


@pytest.mark.asyncio
async def test_not_modified_without_a_cached_copy_is_a_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(304)

    result = await _client(handler).load_catalog("https://lib.example.org/opds2")

    assert not result.success
    assert result.status == 304
